"""
HTTP gateway translating client requests into scheduler and cron operations.

Routes:
- GET  /        identification string
- POST /insert  {timestamp, body} -> {id}
- POST /delete  {id}
- POST /cron    {jobs: [{id, spec}, ...]}

Every POST must carry the shared secret in the Scheduler-Secret header. The
secret is checked before the request body is read.
"""
import json
import logging
import secrets
from datetime import datetime
from json.decoder import WHITESPACE
from typing import Any, List, Optional, Type, TypeVar

import uvicorn
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from dispatcher.callbacks import SECRET_HEADER
from dispatcher.crons import CronEngine, InvalidCronExpression, validate_expression
from dispatcher.models import CronDescriptor
from dispatcher.scheduler import OneShotScheduler
from dispatcher.store import StoreError
from dispatcher.utils import parse_timestamp
from dispatcher.workers import Worker

logger = logging.getLogger("Gateway")

IDENTIFICATION = "Job dispatcher: one-shot and cron jobs delivered as HTTP callbacks."

RequestModel = TypeVar("RequestModel", bound=BaseModel)


class InsertRequest(BaseModel):
    timestamp: datetime
    body: Any = None  # stored as sent, see raw_member

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_rfc3339(cls, value):
        return parse_timestamp(value)


class InsertResponse(BaseModel):
    id: str


class DeleteRequest(BaseModel):
    id: str


class CronJobSpec(BaseModel):
    id: str = Field(min_length=1)
    spec: str

    @field_validator("spec")
    @classmethod
    def check_spec(cls, value: str) -> str:
        try:
            validate_expression(value)
        except InvalidCronExpression as e:
            raise ValueError(str(e))
        return value


class CronRequest(BaseModel):
    jobs: List[CronJobSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def unique_ids(self):
        seen = set()
        for job in self.jobs:
            if job.id in seen:
                raise ValueError(f"duplicate cron id {job.id!r}")
            seen.add(job.id)
        return self

    def descriptors(self) -> List[CronDescriptor]:
        return [
            CronDescriptor(id=job.id, schedule_expression=job.spec) for job in self.jobs
        ]


def _authorize(request: Request, secret: str) -> None:
    supplied = request.headers.get(SECRET_HEADER, "")
    if not secrets.compare_digest(supplied.encode("utf-8"), secret.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized")


async def _parse(request: Request, model: Type[RequestModel]) -> RequestModel:
    raw = await request.body()
    try:
        return model.model_validate_json(raw)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


def raw_member(document: bytes, name: str) -> Optional[bytes]:
    """
    Exact bytes of a top-level member of a JSON object document.

    Returns None when the member is absent or null. The last occurrence wins
    when a key is repeated. Raises ValueError when the document is not a JSON
    object.
    """
    text = document.decode("utf-8")
    decoder = json.JSONDecoder()

    def skip(index):
        return WHITESPACE.match(text, index).end()

    index = skip(0)
    if text[index:index + 1] != "{":
        raise ValueError("expected a JSON object")
    index = skip(index + 1)
    raw = None
    while text[index:index + 1] != "}":
        key, index = decoder.raw_decode(text, index)
        index = skip(index)
        if text[index:index + 1] != ":":
            raise ValueError(f"expected ':' at position {index}")
        start = skip(index + 1)
        _, index = decoder.raw_decode(text, start)
        if key == name:
            raw = text[start:index]
        index = skip(index)
        if text[index:index + 1] == ",":
            index = skip(index + 1)
    if raw is None or raw == "null":
        return None
    return raw.encode("utf-8")


def create_api(scheduler: OneShotScheduler, crons: CronEngine, secret: str) -> FastAPI:
    api = FastAPI(title="Job Dispatcher", docs_url=None, redoc_url=None)

    @api.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    @api.get("/", response_class=PlainTextResponse)
    async def root():
        return IDENTIFICATION

    @api.post("/insert", response_model=InsertResponse)
    async def insert(request: Request):
        _authorize(request, secret)
        payload = await _parse(request, InsertRequest)
        try:
            body = raw_member(await request.body(), "body")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        job_id = await scheduler.create_job(payload.timestamp, body)
        return InsertResponse(id=job_id)

    @api.post("/delete")
    async def delete(request: Request):
        _authorize(request, secret)
        payload = await _parse(request, DeleteRequest)
        await scheduler.cancel_job(payload.id)
        return Response(status_code=200)

    @api.post("/cron")
    async def cron(request: Request):
        _authorize(request, secret)
        payload = await _parse(request, CronRequest)
        count = await crons.reconfigure(payload.descriptors())
        logger.info(f"Cron set replaced with {count} jobs.")
        return Response(status_code=200)

    return api


class GatewayWorker(Worker):
    """Serves the gateway with uvicorn for as long as the other workers run."""

    name = "gateway"

    def __init__(self, app: FastAPI, host: str, port: int):
        super().__init__()
        self.server = uvicorn.Server(
            uvicorn.Config(app, host=host, port=port, log_config=None)
        )

    async def run(self) -> None:
        logger.info(f"Started web server on {self.server.config.host}:{self.server.config.port}.")
        await self.server.serve()
        logger.info("Closed web server.")

    def stop(self) -> None:
        super().stop()
        self.server.should_exit = True
