"""HTTP service entrypoint for the background worker."""

from __future__ import annotations

import asyncio
import contextlib
import os

from fastapi import FastAPI

from casebridge.db.session import SessionLocal
from casebridge.services import job_service
from casebridge.worker import run_worker

app = FastAPI()
_worker_task: asyncio.Task | None = None
_stop = asyncio.Event()


@app.get("/health")
def health() -> dict:
    with SessionLocal() as db:
        queue = job_service.queue_health(db)
    return {"status": "stalled" if queue["stalled"] else "ok", "queue": queue}


@app.on_event("startup")
async def _startup() -> None:
    global _worker_task
    _stop.clear()
    _worker_task = asyncio.create_task(run_worker(_stop))


@app.on_event("shutdown")
async def _shutdown() -> None:
    _stop.set()
    if _worker_task:
        _worker_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _worker_task


def main() -> None:
    import uvicorn

    port = int(os.getenv("PORT", "8080"))
    host = os.getenv("HOST", "0.0.0.0")
    uvicorn.run("casebridge.worker_service:app", host=host, port=port)


if __name__ == "__main__":
    main()
