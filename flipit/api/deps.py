"""Shared API dependencies."""

import secrets
from contextlib import contextmanager

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.engine import Engine
from sqlmodel import Session

from flipit.config import settings
from flipit.engine.operations import (
    ExecutionFailed,
    InvalidTransition,
    LimitOrderNotFound,
    PositionNotFound,
    PriceUnavailable,
)
from flipit.services import execution_gateway, notifier, price_resolver

bearer_scheme = HTTPBearer(auto_error=False)


def require_operator(credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme)):
    """Validate the static operator bearer token."""
    if not settings.operator_token:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Operator token not configured",
        )
    if credentials is None or not secrets.compare_digest(credentials.credentials, settings.operator_token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing token",
        )


def get_engine() -> Engine:
    from flipit.database import engine
    return engine


def get_db(engine: Engine = Depends(get_engine)) -> Session:
    """Dependency that yields a database session bound to the app engine."""
    with Session(engine) as session:
        yield session


def get_resolver() -> price_resolver.PriceResolver:
    return price_resolver.get_resolver()


def get_gateway() -> execution_gateway.ExecutionGateway:
    return execution_gateway.get_gateway()


def get_notifier() -> notifier.Notifier:
    return notifier.get_notifier()


@contextmanager
def domain_errors():
    """Translate engine exceptions into HTTP errors."""
    try:
        yield
    except (PositionNotFound, LimitOrderNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PriceUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    except ExecutionFailed as e:
        raise HTTPException(status_code=502, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
