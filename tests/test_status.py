"""
Tests for the status API and application lifespan.
"""

from fastapi.testclient import TestClient

from tradefeed.app import create_app
from tradefeed.config import Config, ServerConfig
from tradefeed.manager import ConnectionManager
from tradefeed.types import ConnectionState


def build_app(make_config, factory, scheduler, topics=None):
    config = Config(server=ServerConfig(topics=topics or []), stream=make_config())
    manager = ConnectionManager(config.stream, transport_factory=factory, scheduler=scheduler)
    return create_app(config, manager=manager), manager


class TestStatusApi:

    def test_lifespan_connects_and_disconnects(self, make_config, factory, scheduler):
        app, manager = build_app(make_config, factory, scheduler, topics=["ticker/BTC-ETH"])

        with TestClient(app):
            assert manager.state == ConnectionState.CONNECTING
            assert manager.registry.topics == ["ticker/BTC-ETH"]

        assert manager.state == ConnectionState.CLOSED

    def test_status_reports_state(self, make_config, factory, scheduler):
        app, manager = build_app(make_config, factory, scheduler, topics=["orders"])

        with TestClient(app) as client:
            factory.latest.fire_open()
            response = client.get("/stream/status")

        assert response.status_code == 200
        body = response.json()
        assert body["state"] == "open"
        assert body["topics"] == ["orders"]
        assert body["subscriptions"] == 1
        assert body["connections_established"] == 1

    def test_reconnect_endpoint(self, make_config, factory, scheduler):
        app, manager = build_app(make_config, factory, scheduler)

        with TestClient(app) as client:
            factory.latest.fire_open()
            response = client.post("/stream/reconnect")

            assert response.status_code == 202
            assert response.json() == {"previous_state": "open", "state": "connecting"}
            assert len(factory.transports) == 2

    def test_health(self, make_config, factory, scheduler):
        app, manager = build_app(make_config, factory, scheduler)

        with TestClient(app) as client:
            before = client.get("/health").json()
            factory.latest.fire_open()
            after = client.get("/health").json()

        assert before == {"status": "healthy", "stream_connected": False}
        assert after == {"status": "healthy", "stream_connected": True}

    def test_app_exposes_manager(self, make_config, factory, scheduler):
        app, manager = build_app(make_config, factory, scheduler)

        assert app.state.manager is manager
