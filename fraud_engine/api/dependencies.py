"""
API Dependencies

The running FraudEngine instance, shared by all endpoints. The app
lifespan installs it on startup and removes it on shutdown.
"""

from typing import Optional

from fastapi import HTTPException, status

from ..engine import FraudEngine


_engine: Optional[FraudEngine] = None


def set_engine(engine: Optional[FraudEngine]) -> None:
    global _engine
    _engine = engine


def get_engine() -> FraudEngine:
    """
    Get the running engine.

    Raises:
        HTTPException: 503 while the engine is not started
    """
    if _engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Engine not started",
        )
    return _engine
