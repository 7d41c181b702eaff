"""
DocSpace Flow Hub - Main Server

Tracks DocSpace form flows: creation from templates, bulk link generation,
webhook-driven status updates and the flow audit trail. Routes live in
/routes/, services in /services/.
"""

from fastapi import FastAPI, APIRouter
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
from dotenv import load_dotenv
from pathlib import Path
import logging

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ==================== ROUTERS ====================
from routes import auth, flows, webhooks, projects, contacts

# ==================== SERVICES ====================
from services import portal_config
from services.bulk_flows import BulkFlowCreator
from services.docspace_client import DocSpaceClient
from services.flow_status import FlowStatusResolver
from services.flow_store import FlowStore
from services.link_provisioner import LinkProvisioner
from services.reconciliation import ReconciliationPoller
from services.room_resolver import RoomFolderResolver
from services.store_persistence import SnapshotSink, create_snapshot_sink
from services.webhook_ingestor import WebhookIngestor

SERVICE_NAME = "DocSpace Flow Hub"
SERVICE_VERSION = "1.0.0"


def wire_services(client: DocSpaceClient, store: FlowStore) -> dict:
    """Build the service graph and hand it to the routers."""
    resolver = RoomFolderResolver(client)
    poller = ReconciliationPoller(client)
    provisioner = LinkProvisioner(client)
    status_resolver = FlowStatusResolver(store, client)
    bulk_creator = BulkFlowCreator(store, client, resolver, poller, provisioner)
    ingestor = WebhookIngestor(store, status_resolver)

    auth.set_dependencies(client, resolver)
    flows.set_dependencies(store, client, provisioner, bulk_creator, status_resolver)
    webhooks.set_dependencies(ingestor)
    projects.set_dependencies(store, client)
    contacts.set_dependencies(store)

    return {
        "client": client,
        "store": store,
        "room_resolver": resolver,
        "poller": poller,
        "provisioner": provisioner,
        "status_resolver": status_resolver,
        "bulk_creator": bulk_creator,
        "ingestor": ingestor,
    }


def create_app(client: DocSpaceClient = None, sink: SnapshotSink = None) -> FastAPI:
    """
    Build the application. `client` and `sink` default to the environment
    configuration; tests pass their own.
    """

    # ==================== LIFESPAN ====================
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application startup and shutdown."""
        logger.info("Starting %s...", SERVICE_NAME)
        for problem in portal_config.validate_config():
            logger.warning("Configuration: %s", problem)

        mongo_client = None
        store_sink = sink
        if store_sink is None:
            db = None
            if portal_config.STORE_BACKEND == "mongo":
                mongo_client = AsyncIOMotorClient(portal_config.MONGO_URL)
                db = mongo_client[portal_config.DB_NAME]
            store_sink = create_snapshot_sink(portal_config.STORE_BACKEND, portal_config.STORE_PATH, db)

        store = FlowStore(store_sink, portal_config.STORE_SAVE_DEBOUNCE_MS)
        await store.load()
        app.state.services = wire_services(client or DocSpaceClient(), store)
        logger.info("%s started (store: %s)", SERVICE_NAME, store_sink.describe())

        yield

        logger.info("Shutting down %s...", SERVICE_NAME)
        await store.flush()
        if mongo_client:
            mongo_client.close()

    app = FastAPI(
        title=SERVICE_NAME,
        description="DocSpace form flow tracking and webhook reconciliation",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=portal_config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # API Router with /api prefix
    api_router = APIRouter(prefix="/api")
    api_router.include_router(auth.router)
    api_router.include_router(flows.router)
    api_router.include_router(webhooks.router)
    api_router.include_router(projects.router)
    api_router.include_router(contacts.router)

    # ==================== ROOT ENDPOINTS ====================
    @api_router.get("/health")
    async def health():
        services = getattr(app.state, "services", None) or {}
        store = services.get("store")
        return {
            "status": "healthy",
            "service": "docspace-flow-hub",
            "docspaceConfigured": bool(portal_config.DOCSPACE_BASE_URL),
            "webhookSignatureRequired": bool(portal_config.WEBHOOK_SECRET) or portal_config.WEBHOOK_REQUIRE_SIGNATURE,
            "flows": len(store.list_all_flows()) if store else 0,
        }

    app.include_router(api_router)

    @app.get("/")
    async def root():
        return {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "status": "running",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "server:app",
        host=portal_config.SERVER_HOST,
        port=portal_config.SERVER_PORT,
    )
