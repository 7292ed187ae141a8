"""
Cyclops Link: FastAPI application entry point.

Builds the discovery, registry and routing services, starts them in the
lifespan, and serves the REST API and WebSocket endpoint for the UI shell.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import EventHub
from config import API_HOST, API_PORT, DEVICES_FILE
from discovery.network import NetworkMonitor
from discovery.prober import LanProber
from discovery.scanner import Scanner
from registry.registry import DeviceRegistry
from registry.store import JsonDeviceStore
from routing.router import ConnectionRouter
from security.crypto import IdentityVerifier

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@dataclass
class Services:
    verifier: IdentityVerifier
    registry: DeviceRegistry
    scanner: Scanner
    router: ConnectionRouter
    monitor: NetworkMonitor | None
    hub: EventHub


def build_services(store_path=DEVICES_FILE, with_monitor: bool = True) -> Services:
    """Construct every service once, wired to each other."""
    verifier = IdentityVerifier()
    prober = LanProber()
    registry = DeviceRegistry(JsonDeviceStore(store_path))
    scanner = Scanner(prober)
    connection_router = ConnectionRouter(registry, prober, verifier)
    monitor = NetworkMonitor(connection_router.on_network_change) if with_monitor else None
    return Services(
        verifier=verifier,
        registry=registry,
        scanner=scanner,
        router=connection_router,
        monitor=monitor,
        hub=EventHub(),
    )


def create_app(services: Services | None = None, resume: bool = True) -> FastAPI:
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start/stop background services."""
        logger.info("Starting Cyclops Link services...")

        try:
            services.router.on_event(services.hub.handle_router_event)
            services.scanner.on_finished(services.hub.handle_scan_finished)
            services.registry.load()

            if services.monitor:
                await services.monitor.start()
            if resume:
                try:
                    await services.router.resume()
                except Exception as e:
                    logger.warning(f"Could not reconnect to last device: {e}")

            logger.info(f"Cyclops Link ready, API: {API_HOST}:{API_PORT}")

            yield

        except Exception as e:
            logger.error(f"Startup failed: {e}", exc_info=True)
            raise
        finally:
            logger.info("Shutting down Cyclops Link services...")
            if services.monitor:
                await services.monitor.stop()
            await services.scanner.stop()
            await services.router.stop()

    app = FastAPI(
        title="Cyclops Link",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173", "http://127.0.0.1:5173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Inject services into routes
    init_routes(services.scanner, services.registry, services.router, services.verifier)
    app.include_router(router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await services.hub.attach(websocket)
        try:
            while True:
                # Keep the connection alive; we don't expect client messages
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug("UI shell closed its socket")
        finally:
            await services.hub.detach(websocket)

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        create_app(),
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )
