"""
Job Store and Cron Store backed by one SQLAlchemy engine.

The store is constructed once at startup and shared by the scheduler, the
cron engine and the HTTP gateway. Each operation opens its own session, so a
single insert/delete/list is atomic and the store is safe to use from worker
threads. Every database failure surfaces as StoreError.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine, select

from dispatcher.models import CronDescriptor, Job, init_db
from dispatcher.utils import ensure_utc_aware, to_utc

logger = logging.getLogger("Store")


class StoreError(Exception):
    """The persistence layer is unavailable or an operation on it failed."""


def _detached_job(job: Job) -> Job:
    return Job(
        id=job.id,
        created_at=ensure_utc_aware(job.created_at),
        scheduled_for=ensure_utc_aware(job.scheduled_for),
        body=job.body,
    )


def _detached_cron(cron: CronDescriptor) -> CronDescriptor:
    return CronDescriptor(id=cron.id, schedule_expression=cron.schedule_expression)


class Store:
    def __init__(self, engine):
        self.engine = engine

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "Store":
        """Create a store for a database URL; SQLite gets cross-thread access."""
        kwargs = {"echo": echo}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        return cls(create_engine(url, **kwargs))

    def init_schema(self) -> None:
        try:
            init_db(self.engine)
        except SQLAlchemyError as e:
            raise StoreError(f"could not create schema: {e}") from e

    def close(self) -> None:
        self.engine.dispose()
        logger.info("Closed store.")

    # Jobs

    def insert_job(self, scheduled_for: datetime, body: Optional[bytes]) -> Job:
        job = Job(scheduled_for=to_utc(scheduled_for), body=body)
        try:
            with Session(self.engine) as session:
                session.add(job)
                session.commit()
                session.refresh(job)
                return _detached_job(job)
        except SQLAlchemyError as e:
            raise StoreError(f"could not insert job: {e}") from e

    def delete_job(self, job_id: str) -> bool:
        """Delete a job by id. Returns False if there was no such job."""
        try:
            with Session(self.engine) as session:
                job = session.get(Job, job_id)
                if job is None:
                    return False
                session.delete(job)
                session.commit()
                return True
        except SQLAlchemyError as e:
            raise StoreError(f"could not delete job {job_id}: {e}") from e

    def list_due_jobs(self, now: datetime) -> List[Job]:
        """All jobs whose scheduled_for is at or before now."""
        try:
            with Session(self.engine) as session:
                jobs = session.exec(
                    select(Job)
                    .where(Job.scheduled_for <= to_utc(now))
                    .order_by(Job.scheduled_for)
                ).all()
                return [_detached_job(job) for job in jobs]
        except SQLAlchemyError as e:
            raise StoreError(f"could not list due jobs: {e}") from e

    def next_due_time(self) -> Optional[datetime]:
        """scheduled_for of the earliest pending job, or None when there is none."""
        try:
            with Session(self.engine) as session:
                earliest = session.exec(
                    select(Job.scheduled_for).order_by(Job.scheduled_for).limit(1)
                ).first()
        except SQLAlchemyError as e:
            raise StoreError(f"could not find next job: {e}") from e
        return ensure_utc_aware(earliest)

    def count_jobs(self) -> int:
        try:
            with Session(self.engine) as session:
                return session.exec(select(func.count(Job.id))).one()
        except SQLAlchemyError as e:
            raise StoreError(f"could not count jobs: {e}") from e

    # Crons

    def list_crons(self) -> List[CronDescriptor]:
        try:
            with Session(self.engine) as session:
                crons = session.exec(
                    select(CronDescriptor).order_by(CronDescriptor.id)
                ).all()
                return [_detached_cron(cron) for cron in crons]
        except SQLAlchemyError as e:
            raise StoreError(f"could not list crons: {e}") from e

    def clear_crons(self) -> None:
        try:
            with Session(self.engine) as session:
                for cron in session.exec(select(CronDescriptor)).all():
                    session.delete(cron)
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"could not clear crons: {e}") from e

    def insert_cron(self, descriptor: CronDescriptor) -> None:
        try:
            with Session(self.engine) as session:
                session.add(_detached_cron(descriptor))
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"could not insert cron {descriptor.id}: {e}") from e

    def replace_crons(self, descriptors: Iterable[CronDescriptor]) -> int:
        """
        Replace the whole cron table in one transaction.

        Either the new set is fully written or, on any failure, the previous
        set is left untouched. Returns the number of descriptors written.
        """
        descriptors = [_detached_cron(d) for d in descriptors]
        try:
            with Session(self.engine) as session:
                for cron in session.exec(select(CronDescriptor)).all():
                    session.delete(cron)
                session.flush()
                session.add_all(descriptors)
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"could not replace crons: {e}") from e
        logger.info(f"Replaced cron table with {len(descriptors)} descriptors.")
        return len(descriptors)
