"""The jobs demo: take jobs from the service, carry them out, report their status."""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from collections.abc import Callable
from typing import Any

from iotjobs.actions import JobOutcome, execute_job_document, extract_job_id
from iotjobs.config import DemoConfig
from iotjobs.session import MqttSession, SessionError
from iotjobs.topics import (
    JobsTopic,
    JobsTopicError,
    match_topic,
    next_job_changed_topic,
    start_next_topic,
    status_report,
    update_topic,
)

logger = logging.getLogger(__name__)

JOBS_MAX_DEMO_LOOP_COUNT = 3
DELAY_BETWEEN_DEMO_RETRY_ITERATIONS_SECONDS = 5.0
POLL_DELAY_SECONDS = 0.5
JOBS_MESSAGE_QUEUE_LEN = 10

_BANNER = "/*-----------------------------------------------------------*/"

_USER_GUIDE = (
    "\r\n" + _BANNER + "\r\n\r\n"
    "The Jobs demo is now ready to accept Jobs.\r\n"
    "Jobs may be created using the IoT console or command line tools.\r\n\r\n"
    'This demo expects Job documents to have an "action" JSON key.\r\n'
    "The following actions are currently supported:\r\n"
    " - print\r\n"
    '   Logs a message to the local console. The Job document must also contain a "message".\r\n'
    '   For example: { "action": "print", "message": "Hello world!"} will cause\r\n'
    '   "Hello world!" to be printed on the console.\r\n'
    " - publish\r\n"
    '   Publishes a message to an MQTT topic. The Job document must also contain a "message" and "topic".\r\n'
    '   For example: { "action": "publish", "topic": "demo/jobs", "message": "Hello world!"} will cause\r\n'
    '   "Hello world!" to be published to the topic "demo/jobs".\r\n'
    " - exit\r\n"
    '   Exits the demo program. This program will run until { "action": "exit" } is received.\r\n'
    "\r\n" + _BANNER + "\r\n"
)

_QUEUED_KINDS = (JobsTopic.START_NEXT_SUCCESS, JobsTopic.NEXT_JOB_CHANGED)


class JobsDemo:
    """Runs the jobs demo over one MQTT session.

    Incoming jobs messages are queued by :meth:`handle_incoming` and worked
    off one at a time by :meth:`run`.
    """

    def __init__(self, config: DemoConfig, session: Any = None) -> None:
        self.config = config
        self.session = session if session is not None else MqttSession(config, self.handle_incoming)
        self.queue: deque[tuple[str, bytes]] = deque()
        self.queue_capacity = JOBS_MESSAGE_QUEUE_LEN
        self.exit_requested = False
        self.encountered_error = False
        self.max_loop_count = JOBS_MAX_DEMO_LOOP_COUNT
        self.sleep: Callable[[float], object] = time.sleep

    @property
    def thing_name(self) -> str:
        return self.config.thing_name

    def handle_incoming(self, topic: str, payload: bytes | str) -> JobsTopic | None:
        """Sort an incoming publish; queue next-job messages for the run loop.

        Returns the kind of jobs topic, or None when the topic is not a jobs
        topic for this thing.
        """
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        logger.info("Received an incoming publish message: TopicName=%s", topic)
        try:
            matched = match_topic(topic, self.thing_name)
        except JobsTopicError:
            logger.error("Failed to parse incoming publish job. Topic=%s!", topic)
            return None
        if matched is None:
            logger.warning("Incoming message topic does not belong to the jobs service!: topic=%s", topic)
            return None

        kind, _job_id = matched
        text = payload.decode("utf-8", errors="replace")
        if kind in _QUEUED_KINDS:
            if len(self.queue) >= self.queue_capacity:
                logger.error("Could not enqueue Jobs message.")
            else:
                self.queue.append((topic, payload))
        elif kind is JobsTopic.UPDATE_SUCCESS:
            logger.info("Job update status request has been accepted by the jobs service.")
        elif kind is JobsTopic.START_NEXT_FAILED:
            logger.warning("Request for next job description rejected: RejectedResponse=%s.", text)
        elif kind is JobsTopic.UPDATE_FAILED:
            self.encountered_error = True
            logger.warning("Request for job update rejected: RejectedResponse=%s.", text)
            logger.error(
                "Terminating demo as request to update job status has been rejected by the jobs service..."
            )
        else:
            logger.warning(
                "Received an unexpected messages from the jobs service: JobsTopicType=%s", kind.name
            )
        return kind

    def handle_next_job(self, topic: str, payload: bytes | str) -> JobOutcome | None:
        """Execute the job carried in a next-job message and report its status.

        Returns the outcome, or None when the message held no job.
        """
        if isinstance(payload, (bytes, bytearray)):
            try:
                payload = bytes(payload).decode("utf-8")
            except UnicodeDecodeError:
                logger.error("Received invalid JSON payload from the jobs service")
                return None
        try:
            document = json.loads(payload)
        except json.JSONDecodeError:
            logger.error("Received invalid JSON payload from the jobs service")
            return None
        if not isinstance(document, dict):
            logger.warning(
                "Failed to parse Job ID in message received from the jobs service: "
                "IncomingTopic=%s, Payload=%s",
                topic,
                payload,
            )
            return None

        job_id = extract_job_id(document)
        if job_id is None:
            return None

        outcome = execute_job_document(document)
        if outcome.exit_requested:
            self.exit_requested = True

        request = outcome.publish_request
        if request is not None:
            publish_topic, message = request
            try:
                self.session.publish(publish_topic, message)
            except SessionError:
                self.encountered_error = True
                logger.error(
                    'Failed to execute job with "publish" action: Failed to publish to topic. '
                    "JobID=%s, Topic=%s",
                    job_id,
                    publish_topic,
                )

        if outcome.status is not None:
            self.send_update(job_id, outcome.status)
        return outcome

    def send_update(self, job_id: str, status: str) -> bool:
        """Publish ``status`` for ``job_id``; return whether it was sent."""
        report = status_report(status)
        try:
            topic = update_topic(self.thing_name, job_id)
        except JobsTopicError:
            logger.error(
                "Failed to generate Publish topic string for sending job update: "
                "JobID=%s, NewStatePayload=%s",
                job_id,
                report,
            )
            return False
        try:
            self.session.publish(topic, report)
        except SessionError:
            self.encountered_error = True
            logger.error(
                "Failed to update the status of job: JobID=%s, NewStatePayload=%s", job_id, report
            )
            return False
        return True

    def _start(self) -> bool:
        try:
            self.session.connect()
        except SessionError:
            logger.error("Failed to connect to the broker.")
            return False
        logger.info("%s", _USER_GUIDE)
        notify_topic = next_job_changed_topic(self.thing_name)
        try:
            self.session.subscribe(notify_topic)
        except SessionError:
            logger.error(
                "Failed to subscribe to NextJobExecutionChanged API of the jobs service: Topic=%s",
                notify_topic,
            )
            return False
        return True

    def _request_next_job(self) -> bool:
        request_topic = start_next_topic(self.thing_name)
        try:
            self.session.publish(request_topic, None)
        except SessionError:
            logger.error(
                "Failed to publish to StartNextPendingJobExecution API of the jobs service: Topic=%s",
                request_topic,
            )
            return False
        return True

    def _poll(self) -> bool:
        ok = True
        while not self.exit_requested and not self.encountered_error and ok:
            loop_failed = False
            try:
                self.session.process_loop()
            except SessionError:
                loop_failed = True
            if self.queue:
                topic, payload = self.queue.popleft()
                self.handle_next_job(topic, payload)
            if loop_failed:
                ok = False
                logger.error(
                    "Failed to receive notification about next pending job: process loop failed"
                )
            self.sleep(POLL_DELAY_SECONDS)
        return ok

    def _finish(self) -> bool:
        ok = True
        notify_topic = next_job_changed_topic(self.thing_name)
        try:
            self.session.unsubscribe(notify_topic)
        except SessionError:
            ok = False
            logger.error(
                "Failed to unsubscribe from the NextJobExecutionChanged API of the jobs service: Topic=%s",
                notify_topic,
            )
        try:
            self.session.disconnect()
        except SessionError:
            ok = False
            logger.error("Disconnection from the broker failed...")
        return ok

    def run(self) -> bool:
        """Run the demo until an exit job arrives, retrying failed iterations.

        Returns True when the demo completed without error.
        """
        run_count = 0
        while True:
            ok = self._start() and self._request_next_job()
            if ok:
                ok = self._poll()

            run_count += 1
            retry = False
            if not ok or self.encountered_error:
                if run_count < self.max_loop_count:
                    logger.warning("Demo iteration %d failed. Retrying...", run_count)
                    retry = True
                else:
                    logger.error("All %d demo iterations failed.", self.max_loop_count)

            if not self._finish():
                ok = False

            if not retry:
                break
            self.encountered_error = False
            logger.info("A short delay before the next demo iteration.")
            self.sleep(DELAY_BETWEEN_DEMO_RETRY_ITERATIONS_SECONDS)

        succeeded = ok and not self.encountered_error
        if succeeded:
            logger.info("Demo completed successfully.")
        logger.info("Deleting Jobs Demo task.")
        return succeeded