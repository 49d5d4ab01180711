from fastapi import Depends, Request

from api.infra.broker import BrokerConnector
from api.infra.status_store import StatusStore


def get_connector(request: Request) -> BrokerConnector:
    """Dependency injection for the broker connector owned by the app lifespan."""
    return request.app.state.connector


def get_status_store(request: Request) -> StatusStore:
    """Dependency injection for the status store owned by the app lifespan."""
    return request.app.state.status_store


# Convenience type aliases for dependency injection
ConnectorDep = Depends(get_connector)
StatusStoreDep = Depends(get_status_store)
