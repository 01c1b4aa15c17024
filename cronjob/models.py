import json
import logging
import os
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

import pydantic
from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel
from sqlalchemy import Column, Text
from sqlmodel import Field, SQLModel, create_engine

logger = logging.getLogger("Models")


def get_utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Invocation statuses
PENDING = "PENDING"
RUNNING = "RUNNING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"
CANCELLED = "CANCELLED"
FINISHED_STATUSES = (COMPLETED, FAILED, CANCELLED)


class ServiceTarget(BaseModel):
    """A stateless service handler, addressed by service name and handler."""

    type: Literal["service"] = "service"
    name: str
    handler: str


class ObjectTarget(BaseModel):
    """A keyed object handler, addressed by object name, key and handler."""

    type: Literal["object"] = "object"
    name: str
    key: str
    handler: str


class WorkflowTarget(BaseModel):
    """A workflow handler, addressed by workflow name, workflow ID and handler."""

    type: Literal["workflow"] = "workflow"
    name: str
    key: str
    handler: str


Target = Annotated[
    Union[ServiceTarget, ObjectTarget, WorkflowTarget],
    pydantic.Field(discriminator="type"),
]


class JsonPayload(BaseModel):
    """A static JSON value sent unchanged on every run."""

    type: Literal["json"] = "json"
    content: Any

    @field_validator("content")
    @classmethod
    def content_is_json(cls, value: Any) -> Any:
        try:
            json.dumps(value, allow_nan=False)
        except (TypeError, ValueError) as e:
            raise ValueError(f"content is not valid JSON: {e}") from e
        return value


class ScriptPayload(BaseModel):
    """A sandboxed expression evaluated on every run to produce the request body."""

    type: Literal["script"] = "script"
    content: str


Payload = Annotated[
    Union[JsonPayload, ScriptPayload],
    pydantic.Field(discriminator="type"),
]


class JobSpec(BaseModel):
    """
    Definition of a cron job, stored under the job key.

    Attributes:
        schedule: Six-field cron expression with seconds first (eg. "0 */1 * * * *").
        target: The service, object or workflow handler to call on every run.
        payload: Optional request body; static JSON or a script evaluated per run.
    """

    schedule: str
    target: Target
    payload: Optional[Payload] = None


class NextRun(BaseModel):
    """
    The currently armed execution of a cron job.

    Attributes:
        invocation_id: Handle of the pending delayed call to `run`.
        timestamp: When the pending call is due (UTC).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    invocation_id: str
    timestamp: datetime


class ObjectState(SQLModel, table=True):
    """
    Durable state entry of a keyed object.

    Attributes:
        service: Name of the object type (eg. "CronJob").
        key: The object key; all state is scoped to it.
        name: State entry name (eg. "job_spec", "next_run").
        value: JSON-serialized value.
    """

    __tablename__ = "object_state"
    service: str = Field(primary_key=True, max_length=100)
    key: str = Field(primary_key=True, max_length=255)
    name: str = Field(primary_key=True, max_length=100)
    value: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(default_factory=get_utc_now, nullable=False)


class Invocation(SQLModel, table=True):
    """
    A call to a handler of a keyed object, either from ingress or delayed.

    Attributes:
        id: Opaque invocation handle (eg. "inv_3f2a...").
        service: Target object type.
        key: Target object key.
        handler: Handler name.
        argument: JSON-serialized handler input, if any.
        status: PENDING, RUNNING, COMPLETED, FAILED or CANCELLED.
        execute_at: Earliest time the invocation may run; delayed calls are due in the future.
        attempts: Number of attempts started so far.
        idempotency_key: Caller-supplied key deduplicating ingress requests.
        result: JSON-serialized handler output once COMPLETED.
        error_type / error_code / error_message: Failure details of the last attempt.
    """

    __tablename__ = "invocations"
    id: str = Field(primary_key=True, max_length=64)
    service: str = Field(index=True, nullable=False, max_length=100)
    key: str = Field(index=True, nullable=False, max_length=255)
    handler: str = Field(nullable=False, max_length=100)
    argument: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    status: str = Field(default=PENDING, nullable=False, max_length=20, index=True)
    execute_at: datetime = Field(default_factory=get_utc_now, nullable=False, index=True)
    attempts: int = Field(default=0, nullable=False)
    idempotency_key: Optional[str] = Field(
        default=None, nullable=True, max_length=255, index=True
    )
    result: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    error_type: Optional[str] = Field(default=None, nullable=True, max_length=100)
    error_code: Optional[int] = Field(default=None, nullable=True)
    error_message: Optional[str] = Field(
        default=None, sa_column=Column(Text, nullable=True)
    )
    created_at: datetime = Field(default_factory=get_utc_now, nullable=False)
    started_at: Optional[datetime] = Field(default=None, nullable=True)
    completed_at: Optional[datetime] = Field(default=None, nullable=True)


class JournalEntry(SQLModel, table=True):
    """
    Recorded outcome of one nondeterministic step of an invocation.

    Attributes:
        invocation_id: The invocation the step belongs to.
        seq: Position of the step within the invocation.
        kind: Step kind ("run", "send", "cancel", "call").
        name: Step name, checked on replay.
        value: JSON-serialized step result.
        error_type / error_code / error_message: Recorded failure, re-raised on replay.
    """

    __tablename__ = "invocation_journal"
    invocation_id: str = Field(
        foreign_key="invocations.id", primary_key=True, max_length=64
    )
    seq: int = Field(primary_key=True)
    kind: str = Field(nullable=False, max_length=20)
    name: str = Field(nullable=False, max_length=255)
    value: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    error_type: Optional[str] = Field(default=None, nullable=True, max_length=100)
    error_code: Optional[int] = Field(default=None, nullable=True)
    error_message: Optional[str] = Field(
        default=None, sa_column=Column(Text, nullable=True)
    )
    created_at: datetime = Field(default_factory=get_utc_now, nullable=False)


def get_db_url() -> str:
    """
    Retrieve the database URL from the environment or return a default SQLite path.

    The service, the migration script and the example-job script all read it, so
    they operate on the same database.
    """
    return os.getenv("CRON_DB_URL", "sqlite:///cronjob.db")


def init_db(engine=None):
    """
    Initialize the database schema.

    Creates all tables defined in the SQLModel metadata on the given engine, or on
    an engine for `get_db_url()` when none is given.
    """
    if engine is None:
        engine = create_engine(get_db_url())
    SQLModel.metadata.create_all(engine)
    logger.info("Database tables created successfully.")
    return engine
