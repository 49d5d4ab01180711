import asyncio
from unittest.mock import patch

from api.main import create_app
from api.v1.core.registries import task_registry


async def test_lifespan_runs_in_process_dispatcher(settings, broker, status_store):
    settings = settings.model_copy(update={"run_dispatcher_in_app": True})
    app = create_app(settings, connector=broker, status_store=status_store)

    async with app.router.lifespan_context(app):
        for _ in range(100):
            if app.state.dispatcher is not None and app.state.dispatcher.running:
                break
            await asyncio.sleep(0.01)
        assert app.state.dispatcher.running

    assert app.state.dispatcher.running is False
    # Injected resources belong to the caller and stay open
    assert broker.connected


async def test_lifespan_without_dispatcher(settings, broker, status_store):
    app = create_app(settings, connector=broker, status_store=status_store)

    async with app.router.lifespan_context(app):
        assert app.state.dispatcher is None
        assert app.state.connector is broker
        assert app.state.status_store is status_store


async def test_registry_frozen_outside_development(settings, broker, status_store):
    staging = settings.model_copy(update={"environment": "staging"})

    with patch.object(task_registry, "freeze") as freeze:
        create_app(staging, connector=broker, status_store=status_store)

    freeze.assert_called_once()


async def test_registry_left_open_in_development(settings, broker, status_store):
    with patch.object(task_registry, "freeze") as freeze:
        create_app(settings, connector=broker, status_store=status_store)

    freeze.assert_not_called()
