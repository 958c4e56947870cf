from contextlib import asynccontextmanager

from aws_lambda_powertools import Logger
from config import create_db_engine, create_redis_client
from exceptions.exceptions import ViewError
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from routes.assignment_route import router as assignment_router
from services.assignment_service import AssignmentService
from services.cache_service import CacheService
from services.relational_store import RelationalAssignmentStore
from services.subject_store import SubjectStore

LOG = Logger(serialize_stacktrace=False)


def build_assignment_service(engine, redis_client) -> AssignmentService:
    return AssignmentService(
        engine=engine,
        relational_store=RelationalAssignmentStore(),
        subject_store=SubjectStore(redis_client),
        cache=CacheService(redis_client),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = create_db_engine()
    redis_client = create_redis_client()
    app.state.assignment_service = build_assignment_service(engine, redis_client)
    try:
        yield
    finally:
        LOG.info("Shutting down...")
        await redis_client.aclose()
        await engine.dispose()


def create_app(lifespan_handler=lifespan) -> FastAPI:
    app = FastAPI(
        title="Project Assignment Service", version="1.0.0", lifespan=lifespan_handler
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(ViewError)
    async def handle_view_error(request: Request, exc: ViewError):
        request_id = request.headers.get("X-Request-Id")
        if exc.STATUS >= 500:
            LOG.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(
            {"success": False, "error": exc.to_dict(request_id)},
            status_code=exc.STATUS,
        )

    @app.get("/ping")
    async def ping():
        return JSONResponse({"status": "Healthy"})

    app.include_router(assignment_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8080, access_log=False)
