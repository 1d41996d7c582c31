"""FastAPI application for the BlockServed notice backend.

Exposes a ping endpoint that checks PostgreSQL connectivity and mounts the
case, notice, process-server and task routers under ``/api/v1``.
"""

from typing import Any

import os

import psycopg2
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel
from psycopg2 import Error as PsycopgError
from psycopg2.extras import RealDictCursor

from blockserved.api.v1.endpoints.cases import router as cases_router
from blockserved.api.v1.endpoints.notices import router as notices_router
from blockserved.api.v1.endpoints.process_servers import router as process_servers_router
from blockserved.api.v1.endpoints.tasks import router as tasks_router
from blockserved.db.session import init_db


class PingResponse(BaseModel):
    """Response model for the ping endpoint.

    Attributes:
        message: Human readable message.
        database: Database connectivity status.
    """

    message: str
    database: str


def _get_db_connection() -> psycopg2.extensions.connection:
    """Create a new PostgreSQL connection using environment variables.

    Returns:
        psycopg2.extensions.connection: A live database connection.

    Raises:
        PsycopgError: If the connection cannot be established.
    """

    dsn: str | None = os.getenv("DATABASE_URL")
    if dsn:
        return psycopg2.connect(dsn.replace("postgresql+psycopg2://", "postgresql://", 1))

    user: str | None = os.getenv("POSTGRES_USER")
    password: str | None = os.getenv("POSTGRES_PASSWORD")
    host: str = os.getenv("POSTGRES_SERVER", "localhost")
    port: str = os.getenv("POSTGRES_PORT", "5432")
    db_name: str | None = os.getenv("POSTGRES_DB")

    return psycopg2.connect(
        f"dbname={db_name} user={user} password={password} host={host} port={port}"
    )


app: FastAPI = FastAPI(title=os.getenv("PROJECT_NAME", "BlockServed"))

app.include_router(cases_router, prefix="/api/v1/cases", tags=["cases"])
app.include_router(notices_router, prefix="/api/v1/notices", tags=["notices"])
app.include_router(process_servers_router, prefix="/api/v1/process-servers", tags=["process-servers"])
app.include_router(tasks_router, prefix="/api/v1/tasks", tags=["tasks"])


@app.on_event("startup")
def _startup() -> None:
    init_db()


@app.get("/ping", response_model=PingResponse)
async def ping() -> PingResponse:
    """Ping endpoint to validate connectivity between API and database.

    Raises:
        HTTPException: If the database is not reachable.
    """

    try:
        with _get_db_connection() as connection:
            with connection.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute("SELECT 1 AS ok;")
                row: dict[str, Any] | None = cursor.fetchone()
    except PsycopgError as exc:
        raise HTTPException(
            status_code=500,
            detail="Database connectivity error",
        ) from exc

    database_status: str = "ok" if row and row.get("ok") == 1 else "unknown"
    return PingResponse(message="pong", database=database_status)
