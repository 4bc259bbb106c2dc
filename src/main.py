"""
main.py

Entry point for the SafeCase guided safety-assessment editor API.

Configures logging from settings and starts uvicorn.

Usage
-----
    # Option 1 - run directly
    python main.py

    # Option 2 - run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

Configuration comes from SAFECASE_* environment variables or a .env file
(see config.py), e.g. SAFECASE_LOG_LEVEL=DEBUG, SAFECASE_PORT=8080.

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI
    http://localhost:8000/health    ← liveness check

Quick-start walkthrough (use Swagger UI or curl)
-------------------------------------------------
1.  POST /api/v1/cases                                - create a case
                                                        {"kind": "risk_assessment", "title": "..."}
2.  POST /api/v1/cases/{id}/contextual-update/apply   - apply a parsed batch
                                                        {"commands": [{"intent": "ADD", "target": "STEP",
                                                          "data": {"activity": "Unload pallets"}}]}
3.  POST /api/v1/cases/{id}/contextual-update/undo    - roll the batch back
4.  GET  /api/v1/cases/{id}/phases                    - see which phases are complete
5.  POST /api/v1/cases/{id}/advance-phase             - move on once the phase is complete
"""

import uvicorn

from api import app  # noqa: F401
from config import get_settings
from logging_config import setup_logging


settings = get_settings()
setup_logging(level=settings.log_level, log_dir=settings.log_dir, serialize=settings.log_serialize)


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )
