"""MQTT topic names of the jobs service: building and recognising them."""

from __future__ import annotations

import re
from enum import Enum

TOPIC_PREFIX = "$aws/things/"
TOPIC_BRIDGE = "/jobs/"
ACCEPTED_SUFFIX = "/accepted"
REJECTED_SUFFIX = "/rejected"

THING_NAME_MAX_LENGTH = 128
JOB_ID_MAX_LENGTH = 64

STATUS_IN_PROGRESS = "IN_PROGRESS"
STATUS_SUCCEEDED = "SUCCEEDED"
STATUS_FAILED = "FAILED"
_STATUSES = frozenset({STATUS_IN_PROGRESS, STATUS_SUCCEEDED, STATUS_FAILED})

_THING_NAME_RE = re.compile(r"[A-Za-z0-9:_-]+")
_JOB_ID_RE = re.compile(r"[A-Za-z0-9_-]+")


class JobsTopicError(ValueError):
    """A thing name, job ID, topic or status is not acceptable."""


class JobsTopic(Enum):
    """Kinds of incoming jobs topics."""

    JOBS_CHANGED = "notify"
    NEXT_JOB_CHANGED = "notify-next"
    GET_PENDING_SUCCESS = "get/accepted"
    GET_PENDING_FAILED = "get/rejected"
    START_NEXT_SUCCESS = "start-next/accepted"
    START_NEXT_FAILED = "start-next/rejected"
    DESCRIBE_SUCCESS = "{job}/get/accepted"
    DESCRIBE_FAILED = "{job}/get/rejected"
    UPDATE_SUCCESS = "{job}/update/accepted"
    UPDATE_FAILED = "{job}/update/rejected"

    @property
    def has_job_id(self) -> bool:
        return self.value.startswith("{job}/")


_FIXED_SUFFIXES = {t.value: t for t in JobsTopic if not t.has_job_id}
_JOB_SUFFIXES = {t.value[len("{job}/"):]: t for t in JobsTopic if t.has_job_id}


def _check_thing_name(thing_name: str) -> None:
    if not thing_name or len(thing_name) > THING_NAME_MAX_LENGTH:
        raise JobsTopicError(f"thing name length must be 1..{THING_NAME_MAX_LENGTH}")
    if not _THING_NAME_RE.fullmatch(thing_name):
        raise JobsTopicError(f"invalid thing name: {thing_name!r}")


def _is_valid_job_id(job_id: str) -> bool:
    return 0 < len(job_id) <= JOB_ID_MAX_LENGTH and bool(_JOB_ID_RE.fullmatch(job_id))


def _check_job_id(job_id: str) -> None:
    if not _is_valid_job_id(job_id):
        raise JobsTopicError(f"invalid job ID: {job_id!r}")


def _base(thing_name: str) -> str:
    _check_thing_name(thing_name)
    return f"{TOPIC_PREFIX}{thing_name}{TOPIC_BRIDGE}"


def start_next_topic(thing_name: str) -> str:
    """Topic to publish on to request the next pending job."""
    return _base(thing_name) + "start-next"


def next_job_changed_topic(thing_name: str) -> str:
    """Topic announcing changes to the next pending job."""
    return _base(thing_name) + JobsTopic.NEXT_JOB_CHANGED.value


def update_topic(thing_name: str, job_id: str) -> str:
    """Topic to publish on to update a job execution's status."""
    base = _base(thing_name)
    _check_job_id(job_id)
    return f"{base}{job_id}/update"


def match_topic(topic: str, thing_name: str) -> tuple[JobsTopic, str | None] | None:
    """Classify an incoming topic for ``thing_name``.

    Returns the topic kind and, for per-job topics, the job ID; returns None
    when the topic is not a jobs topic for this thing. Raises JobsTopicError
    for an empty topic or an invalid thing name.
    """
    if not topic:
        raise JobsTopicError("topic must not be empty")
    base = _base(thing_name)
    if not topic.startswith(base):
        return None
    rest = topic[len(base):]

    fixed = _FIXED_SUFFIXES.get(rest)
    if fixed is not None:
        return fixed, None

    job_id, sep, tail = rest.partition("/")
    if not sep:
        return None
    kind = _JOB_SUFFIXES.get(tail)
    if kind is None or not _is_valid_job_id(job_id):
        return None
    return kind, job_id


def status_report(status: str) -> str:
    """JSON document reporting a job execution status."""
    if status not in _STATUSES:
        raise JobsTopicError(f"unknown job status: {status!r}")
    return '{"status":"' + status + '"}'