import json

import pytest

from iotjobs.topics import (
    JobsTopic,
    JobsTopicError,
    match_topic,
    next_job_changed_topic,
    start_next_topic,
    status_report,
    update_topic,
)

THING = "thing-1"


def test_start_next_topic_value():
    assert start_next_topic(THING) == "$aws/things/thing-1/jobs/start-next"


def test_next_job_changed_topic_value():
    assert next_job_changed_topic(THING) == "$aws/things/thing-1/jobs/notify-next"


def test_update_topic_contains_ids():
    topic = update_topic(THING, "job-42")
    assert topic.endswith("/job-42/update")
    assert topic.startswith(start_next_topic(THING)[: -len("start-next")])


def test_status_report_pinned():
    assert status_report("FAILED") == '{"status":"FAILED"}'


@pytest.mark.parametrize("status", ["IN_PROGRESS", "SUCCEEDED", "FAILED"])
def test_status_report_is_json(status):
    assert json.loads(status_report(status)) == {"status": status}


def test_status_report_unknown():
    with pytest.raises(JobsTopicError):
        status_report("DONE")


def test_match_next_job_changed():
    assert match_topic(next_job_changed_topic(THING), THING) == (JobsTopic.NEXT_JOB_CHANGED, None)


def test_match_start_next_accepted_and_rejected():
    base = start_next_topic(THING)
    assert match_topic(base + "/accepted", THING) == (JobsTopic.START_NEXT_SUCCESS, None)
    assert match_topic(base + "/rejected", THING) == (JobsTopic.START_NEXT_FAILED, None)


def test_match_update_round_trip():
    base = update_topic(THING, "job_7")
    assert match_topic(base + "/accepted", THING) == (JobsTopic.UPDATE_SUCCESS, "job_7")
    assert match_topic(base + "/rejected", THING) == (JobsTopic.UPDATE_FAILED, "job_7")


def test_match_describe():
    base = update_topic(THING, "abc")[: -len("update")]
    assert match_topic(base + "get/accepted", THING) == (JobsTopic.DESCRIBE_SUCCESS, "abc")


def test_match_other_thing_is_no_match():
    assert match_topic(next_job_changed_topic("other"), THING) is None


def test_match_unrelated_topic():
    assert match_topic("demo/jobs", THING) is None


def test_match_bare_start_next_is_no_match():
    assert match_topic(start_next_topic(THING), THING) is None


def test_match_empty_topic_raises():
    with pytest.raises(JobsTopicError):
        match_topic("", THING)


@pytest.mark.parametrize("bad", ["", "a/b", "x" * 129, "has space"])
def test_invalid_thing_name(bad):
    with pytest.raises(JobsTopicError):
        start_next_topic(bad)


@pytest.mark.parametrize("bad", ["", "a/b", "j" * 65])
def test_invalid_job_id(bad):
    with pytest.raises(JobsTopicError):
        update_topic(THING, bad)


def test_longest_names_accepted():
    thing = "t" * 128
    job = "j" * 64
    topic = update_topic(thing, job)
    assert match_topic(topic + "/accepted", thing) == (JobsTopic.UPDATE_SUCCESS, job)


def test_errors_are_value_errors():
    with pytest.raises(ValueError):
        next_job_changed_topic("")