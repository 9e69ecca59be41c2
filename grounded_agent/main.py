# The module provides the FastAPI application that exposes the action-execution core.
# Date: 2026-10-18
# Version: 0.2.0

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from grounded_agent.api.v1.api import api_router
from grounded_agent.core.exceptions import GroundedAgentError
from grounded_agent.services.task_supervisor import task_supervisor
from grounded_agent.utils.logger import console


@asynccontextmanager
async def lifespan(app: FastAPI):
    console.info("Grounded Agent server starting.")
    yield
    await task_supervisor.shutdown()
    console.info("Grounded Agent server stopped.")


app = FastAPI(
    title="Grounded Agent",
    version="0.2.0",
    description="Grounded tool-calling orchestration with blocking, streaming and polling delivery.",
    lifespan=lifespan,
)


@app.exception_handler(GroundedAgentError)
async def grounded_agent_error_handler(request: Request, exc: GroundedAgentError):
    console.error(f"{request.method} {request.url.path} failed ({exc.code}): {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.to_detail().model_dump(exclude_none=True)},
    )


@app.get("/", summary="Health Check", tags=["Status"])
def read_root():
    """Root endpoint to check if the service is alive."""
    console.info("Health check endpoint was hit.")
    return {"message": "Grounded Agent is alive and running!"}

# Include the v1 router with a global '/v1' prefix
app.include_router(api_router, prefix="/v1")
