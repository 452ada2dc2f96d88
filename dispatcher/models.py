import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, LargeBinary
from sqlmodel import Field, SQLModel

from dispatcher.utils import get_utc_now


def new_job_id() -> str:
    return str(uuid.uuid4())


class Job(SQLModel, table=True):
    """
    Model representing a one-shot job waiting to be dispatched.

    Rows only exist while a job is pending: dispatching or cancelling a job
    deletes it, so there is no status column.

    Attributes:
        id: Identifier assigned at creation.
        created_at: When the job was registered.
        scheduled_for: Earliest instant the job may fire (stored as UTC).
        body: Raw payload POSTed to the callback endpoint; None for an empty request.
    """

    __tablename__ = "jobs"
    id: str = Field(default_factory=new_job_id, primary_key=True, max_length=36)
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    scheduled_for: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True)
    )
    body: Optional[bytes] = Field(
        default=None, sa_column=Column(LargeBinary, nullable=True)
    )


class CronDescriptor(SQLModel, table=True):
    """
    Model representing a recurring trigger.

    Attributes:
        id: Caller-supplied identifier, sent back as cron_id on every firing.
        schedule_expression: Six-field, seconds-first cron expression.
    """

    __tablename__ = "crons"
    id: str = Field(primary_key=True, max_length=255)
    schedule_expression: str = Field(nullable=False)


def init_db(engine) -> None:
    """Create the jobs and crons tables if they do not exist yet."""
    SQLModel.metadata.create_all(engine)
