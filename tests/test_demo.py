import json

import pytest

from iotjobs.actions import JobAction
from iotjobs.config import DemoConfig
from iotjobs.demo import JOBS_MAX_DEMO_LOOP_COUNT, JOBS_MESSAGE_QUEUE_LEN, JobsDemo
from iotjobs.session import SessionError
from iotjobs.topics import (
    JobsTopic,
    JobsTopicError,
    next_job_changed_topic,
    start_next_topic,
    status_report,
    update_topic,
)

THING = "demo-thing"
PREFIX = "$aws/things/" + THING + "/jobs/"
START_ACCEPTED = PREFIX + "start-next/accepted"


class FakeSession:
    def __init__(self, deliveries=None, fail_connects=0, fail_topics=()):
        self.deliveries = list(deliveries or [])
        self.fail_connects = fail_connects
        self.fail_topics = set(fail_topics)
        self.connects = 0
        self.disconnects = 0
        self.subscribed = []
        self.unsubscribed = []
        self.published = []
        self.demo = None

    def connect(self):
        self.connects += 1
        if self.connects <= self.fail_connects:
            raise SessionError("refused")

    def disconnect(self):
        self.disconnects += 1

    def subscribe(self, topic):
        self.subscribed.append(topic)

    def unsubscribe(self, topic):
        self.unsubscribed.append(topic)

    def publish(self, topic, payload=None):
        if topic in self.fail_topics:
            raise SessionError("publish failed")
        self.published.append((topic, payload))
        return len(self.published)

    def process_loop(self, timeout=None):
        if not self.deliveries:
            raise SessionError("connection lost")
        topic, payload = self.deliveries.pop(0)
        self.demo.handle_incoming(topic, payload)


def job(document, job_id="job-1"):
    return json.dumps({"execution": {"jobId": job_id, "jobDocument": document}})


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def demo(session):
    d = JobsDemo(DemoConfig(client_identifier=THING, broker_endpoint="broker.example.com"), session)
    session.demo = d
    d.sleep = lambda seconds: None
    return d


def test_print_job_reports_success(demo, session):
    outcome = demo.handle_next_job(START_ACCEPTED, job({"action": "print", "message": "Hello"}))
    assert outcome.action is JobAction.PRINT
    assert session.published == [(update_topic(THING, "job-1"), status_report("SUCCEEDED"))]


def test_publish_job_publishes_then_reports(demo, session):
    payload = job({"action": "publish", "topic": "demo/jobs", "message": "Hello world!"})
    demo.handle_next_job(START_ACCEPTED, payload.encode())
    assert session.published == [
        ("demo/jobs", "Hello world!"),
        (update_topic(THING, "job-1"), status_report("SUCCEEDED")),
    ]


def test_failed_publish_still_reports_success_but_flags_error(demo, session):
    session.fail_topics.add("demo/jobs")
    demo.handle_next_job(
        START_ACCEPTED, job({"action": "publish", "topic": "demo/jobs", "message": "m"})
    )
    assert demo.encountered_error is True
    assert session.published == [(update_topic(THING, "job-1"), status_report("SUCCEEDED"))]


def test_print_without_message_reports_failure(demo, session):
    demo.handle_next_job(START_ACCEPTED, job({"action": "print"}))
    assert session.published == [(update_topic(THING, "job-1"), status_report("FAILED"))]


def test_unknown_action_sends_no_update(demo, session):
    outcome = demo.handle_next_job(START_ACCEPTED, job({"action": "reboot"}))
    assert outcome.action is JobAction.UNKNOWN
    assert session.published == []


def test_exit_job_requests_exit(demo, session):
    demo.handle_next_job(START_ACCEPTED, job({"action": "exit"}))
    assert demo.exit_requested is True
    assert session.published == [(update_topic(THING, "job-1"), status_report("SUCCEEDED"))]


@pytest.mark.parametrize("payload", ['{"timestamp": 1}', "not json", b"\xff\xfe", "[1, 2]"])
def test_messages_without_a_job_are_ignored(demo, session, payload):
    assert demo.handle_next_job(START_ACCEPTED, payload) is None
    assert session.published == []


def test_overlong_job_id_is_rejected(demo):
    with pytest.raises(JobsTopicError):
        demo.handle_next_job(START_ACCEPTED, job({"action": "exit"}, job_id="j" * 64))


def test_next_job_messages_are_queued(demo):
    kind = demo.handle_incoming(PREFIX + "notify-next", b"{}")
    assert kind is JobsTopic.NEXT_JOB_CHANGED
    assert list(demo.queue) == [(PREFIX + "notify-next", b"{}")]


def test_queue_drops_messages_when_full(demo):
    for _ in range(JOBS_MESSAGE_QUEUE_LEN + 3):
        demo.handle_incoming(START_ACCEPTED, b"{}")
    assert len(demo.queue) == JOBS_MESSAGE_QUEUE_LEN


def test_foreign_topic_is_not_queued(demo):
    assert demo.handle_incoming("demo/jobs", b"{}") is None
    assert len(demo.queue) == 0


def test_rejected_update_flags_error(demo):
    kind = demo.handle_incoming(PREFIX + "job-1/update/rejected", b"{}")
    assert kind is JobsTopic.UPDATE_FAILED
    assert demo.encountered_error is True


def test_send_update_failure_flags_error(demo, session):
    session.fail_topics.add(update_topic(THING, "job-1"))
    assert demo.send_update("job-1", "SUCCEEDED") is False
    assert demo.encountered_error is True


def test_send_update_with_bad_job_id_is_not_sent(demo, session):
    assert demo.send_update("bad id", "FAILED") is False
    assert session.published == []


def test_run_completes_on_exit_job(demo, session):
    session.deliveries = [(START_ACCEPTED, job({"action": "exit"}).encode())]
    assert demo.run() is True
    assert session.subscribed == [next_job_changed_topic(THING)]
    assert session.published[0] == (start_next_topic(THING), None)
    assert session.unsubscribed == [next_job_changed_topic(THING)]
    assert session.disconnects == 1


def test_run_gives_up_after_all_iterations_fail(demo, session):
    session.fail_connects = 100
    assert demo.run() is False
    assert session.connects == JOBS_MAX_DEMO_LOOP_COUNT


def test_run_retries_after_a_failed_connect(demo, session):
    sleeps = []
    demo.sleep = sleeps.append
    session.fail_connects = 1
    session.deliveries = [(START_ACCEPTED, job({"action": "exit"}))]
    assert demo.run() is True
    assert session.connects == 2
    assert 5.0 in sleeps