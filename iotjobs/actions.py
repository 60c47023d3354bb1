"""Reading job documents and deciding what each job asks the device to do."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from iotjobs.topics import (
    JOB_ID_MAX_LENGTH,
    STATUS_FAILED,
    STATUS_SUCCEEDED,
    JobsTopicError,
    status_report,
)

logger = logging.getLogger(__name__)

EXECUTION_KEY = "execution"
JOB_ID_KEY = EXECUTION_KEY + ".jobId"
JOB_DOCUMENT_KEY = EXECUTION_KEY + ".jobDocument"
ACTION_KEY = JOB_DOCUMENT_KEY + ".action"
MESSAGE_KEY = JOB_DOCUMENT_KEY + ".message"
TOPIC_KEY = JOB_DOCUMENT_KEY + ".topic"
TIMESTAMP_KEY = "timestamp"

Document = str | bytes | bytearray | Mapping[str, Any]

_PRINT_BANNER = "/*-----------------------------------------------------------*/"


class JobAction(Enum):
    """Actions a job document can ask for."""

    PRINT = "print"
    PUBLISH = "publish"
    EXIT = "exit"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class JobOutcome:
    """What executing a job document came to.

    ``status`` is None when no update is to be sent for the job, as for an
    unknown action. For a publish job, ``topic`` and ``message`` say what is
    to be published.
    """

    action: JobAction | None
    status: str | None
    message: str | None = None
    topic: str | None = None
    exit_requested: bool = False
    reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_SUCCEEDED

    @property
    def report(self) -> str | None:
        """The JSON status report to send, or None when none is due."""
        return None if self.status is None else status_report(self.status)

    @property
    def publish_request(self) -> tuple[str, str] | None:
        """Topic and message to publish, for a successful publish job."""
        if self.action is JobAction.PUBLISH and self.succeeded:
            assert self.topic is not None and self.message is not None
            return self.topic, self.message
        return None


_KNOWN_ACTIONS = (JobAction.PRINT, JobAction.PUBLISH, JobAction.EXIT)


def parse_action(text: str) -> JobAction:
    """Map an action string to a :class:`JobAction`.

    As with a length-bounded comparison, a string matches an action when it
    is a prefix of the action's name; the names are tried in the order
    print, publish, exit.
    """
    for action in _KNOWN_ACTIONS:
        if action.value.startswith(text):
            return action
    return JobAction.UNKNOWN


def _load(document: Document) -> Mapping[str, Any]:
    if isinstance(document, Mapping):
        return document
    if isinstance(document, (bytes, bytearray)):
        try:
            document = bytes(document).decode("utf-8")
        except UnicodeDecodeError as error:
            raise ValueError(f"job document is not valid UTF-8: {error}") from None
    if not document:
        raise ValueError("job document must not be empty")
    try:
        loaded = json.loads(document)
    except json.JSONDecodeError as error:
        raise ValueError(f"job document is not valid JSON: {error}") from None
    if not isinstance(loaded, Mapping):
        raise ValueError("job document must be a JSON object")
    return loaded


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"))


def find_key(document: Document, dotted_key: str) -> Any:
    """Look up ``dotted_key`` (e.g. ``"execution.jobId"``) in a JSON object.

    Raises KeyError when any part of the path is missing and ValueError when
    the document is not a JSON object.
    """
    if not dotted_key:
        raise KeyError(dotted_key)
    node: Any = _load(document)
    for part in dotted_key.split("."):
        if not isinstance(node, Mapping) or part not in node:
            raise KeyError(dotted_key)
        node = node[part]
    return node


def _find_text(document: Mapping[str, Any], dotted_key: str) -> str | None:
    try:
        return _as_text(find_key(document, dotted_key))
    except KeyError:
        return None


def extract_job_id(document: Document) -> str | None:
    """Return the job ID of the next pending job, or None when there is none.

    Messages that carry only a timestamp have no job ID; anything else
    without one is logged as a warning. Raises ValueError for a document
    that is not a JSON object and JobsTopicError for an overlong job ID.
    """
    loaded = _load(document)
    job_id = _find_text(loaded, JOB_ID_KEY)
    if job_id is None:
        if _find_text(loaded, TIMESTAMP_KEY) is None:
            logger.warning(
                "Failed to parse Job ID in message received from jobs service: Payload=%s",
                _as_text(dict(loaded)),
            )
        return None
    if len(job_id) >= JOB_ID_MAX_LENGTH:
        raise JobsTopicError(f"job ID longer than {JOB_ID_MAX_LENGTH - 1} characters")
    logger.info("Received a Job from jobs service: JobId=%s", job_id)
    return job_id


def _failed(action: JobAction | None, reason: str) -> JobOutcome:
    logger.error("%s", reason)
    return JobOutcome(action=action, status=STATUS_FAILED, reason=reason)


def execute_job_document(document: Document) -> JobOutcome:
    """Carry out the job described in a next-job message.

    Print jobs are logged here; publish jobs come back with the topic and
    message to publish; exit jobs set ``exit_requested``. Raises ValueError
    when the document is not a JSON object.
    """
    loaded = _load(document)

    action_text = _find_text(loaded, ACTION_KEY)
    if action_text is None:
        return _failed(
            None, 'Job document schema is invalid. Missing expected "action" key in document.'
        )

    action = parse_action(action_text)

    if action is JobAction.EXIT:
        logger.info('Received job contains "exit" action. Updating state of demo.')
        return JobOutcome(action=action, status=STATUS_SUCCEEDED, exit_requested=True)

    if action is JobAction.PRINT:
        logger.info('Received job contains "print" action.')
        message = _find_text(loaded, MESSAGE_KEY)
        if message is None:
            return _failed(
                action, 'Job document schema is invalid. Missing "message" for "print" action type.'
            )
        logger.info("\r\n%s\r\n\r\n%s\r\n\r\n%s\r\n", _PRINT_BANNER, message, _PRINT_BANNER)
        return JobOutcome(action=action, status=STATUS_SUCCEEDED, message=message)

    if action is JobAction.PUBLISH:
        logger.info('Received job contains "publish" action.')
        topic = _find_text(loaded, TOPIC_KEY)
        if topic is None:
            return _failed(
                action,
                'Job document schema is invalid. Missing "topic" key for "publish" action type.',
            )
        message = _find_text(loaded, MESSAGE_KEY)
        if message is None:
            return _failed(
                action,
                'Job document schema is invalid. Missing "message" key for "publish" action type.',
            )
        return JobOutcome(action=action, status=STATUS_SUCCEEDED, message=message, topic=topic)

    reason = f"Received Job document with unknown action {action_text}."
    logger.warning("%s", reason)
    return JobOutcome(action=JobAction.UNKNOWN, status=None, reason=reason)