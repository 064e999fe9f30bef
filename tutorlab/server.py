from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from tutorlab.config import settings
from tutorlab.db.database import init_db
from tutorlab.services.flow_guard import FlowGuard
from tutorlab.services.flow_machine import FlowRegistry
from tutorlab.services.response_generator import ResponseGenerator
from tutorlab.services.scenario_assigner import ScenarioAssigner
from tutorlab.services.stage_store import DatabaseStageStore
from tutorlab.services.telemetry_recorder import TelemetryRecorder

# CORS: use CORS_ORIGINS env var (comma-separated) or sensible defaults.
if settings.cors_origins:
    _allowed_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
else:
    _allowed_origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:8000",
        "http://127.0.0.1:8000",
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield


def create_app() -> FastAPI:
    app = FastAPI(title="Tutoring Experiment Flow", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    # One engine per process; each participant gets its own state machine from the registry
    store = DatabaseStageStore()
    app.state.flows = FlowRegistry(store, ScenarioAssigner())
    app.state.guard = FlowGuard()
    app.state.recorder = TelemetryRecorder(store)
    app.state.generator = ResponseGenerator()

    # Import and register routes
    from tutorlab.routes.flow import router as flow_router, dev_router
    from tutorlab.routes.users import router as users_router
    from tutorlab.routes.sessions import router as sessions_router
    from tutorlab.routes.attempts import router as attempts_router
    from tutorlab.routes.surveys import router as surveys_router
    from tutorlab.routes.generate import router as generate_router

    app.include_router(flow_router)
    app.include_router(dev_router)
    app.include_router(users_router)
    app.include_router(sessions_router)
    app.include_router(attempts_router)
    app.include_router(surveys_router)
    app.include_router(generate_router)

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "model_configured": bool(settings.api_key)}

    return app


app = create_app()
