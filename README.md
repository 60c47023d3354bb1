# iotjobs

`iotjobs` is a device-side client for a cloud jobs service that speaks MQTT.
It connects to a broker over TLS, asks for the next pending job for a thing,
executes the job document it receives and reports the outcome back to the
service as `SUCCEEDED` or `FAILED`.

## Installing

```
pip install .
```

To run the test suite:

```
pip install .[test]
pytest
```

## Running

```
iotjobs --client-id my-device --endpoint broker.example.com \
        --root-ca root-ca.pem --cert client.crt --key client.key
```

Every setting can come from the environment or from a command line option;
an option takes precedence over the environment variable.

| option         | environment variable             | meaning                                   |
|----------------|----------------------------------|-------------------------------------------|
| `--client-id`  | `CONFIG_MQTT_CLIENT_IDENTIFIER`  | MQTT client identifier (required)         |
| `--endpoint`   | `CONFIG_MQTT_BROKER_ENDPOINT`    | broker host name (required)               |
| `--port`       | `CONFIG_MQTT_BROKER_PORT`        | broker port, 8883 by default              |
| `--thing-name` | `CONFIG_THING_NAME`              | thing name, the client identifier by default |
| `--platform`   | `CONFIG_HARDWARE_PLATFORM_NAME`  | platform name in the metrics user name    |
| `--root-ca`    | `CONFIG_ROOT_CA_PATH`            | root CA certificate file                  |
| `--cert`       | `CONFIG_CLIENT_CERT_PATH`        | client certificate file                   |
| `--key`        | `CONFIG_CLIENT_KEY_PATH`         | client private key file                   |

`-v`/`--verbose` turns on debug logging. On port 443 the TLS handshake offers
the ALPN protocol `x-amzn-mqtt-ca`.

The command connects with retries and exponential back-off with jitter,
subscribes to the next-job-changed topic of the thing and requests the next
pending job. It then processes jobs until it receives an `exit` job. A failed
run is tried again after a short delay, up to three runs in all. The exit
status is 0 on success, 1 on failure and 2 when the settings are missing or
malformed.

## Job documents

A job document must carry an `action` key. These actions are supported:

| action    | required keys          | effect                                    |
|-----------|------------------------|-------------------------------------------|
| `print`   | `message`              | logs the message                          |
| `publish` | `topic`, `message`     | publishes the message to the MQTT topic   |
| `exit`    |                        | reports the job as succeeded and stops    |

Examples:

```json
{ "action": "print", "message": "Hello world!" }
{ "action": "publish", "topic": "demo/jobs", "message": "Hello world!" }
{ "action": "exit" }
```

If a required key is missing, the job is reported as `FAILED`. A job with an
unknown action is logged and no status is reported for it.

## Library use

The parts can be used on their own:

- `iotjobs.config`: `DemoConfig` and `load_config`, which reads the settings
  above from a mapping (the environment by default).
- `iotjobs.topics` builds and recognises jobs topics: `start_next_topic`,
  `next_job_changed_topic`, `update_topic`, `match_topic` (which returns a
  `JobsTopic` and, for per-job topics, the job ID) and `status_report`.
  Invalid names raise `JobsTopicError`.
- `iotjobs.actions` reads job documents: `parse_action`, `find_key`,
  `extract_job_id` and `execute_job_document`, which returns a `JobOutcome`.
- `iotjobs.retry` provides `BackoffPolicy` and `retry_with_backoff`, which
  raise `RetriesExhausted` when all attempts are used.
- `iotjobs.publishes` keeps QoS 1 publishes in `OutgoingPublishes` until they
  are acknowledged, so they can be sent again when a session resumes.
- `iotjobs.session.MqttSession` wraps the paho-mqtt client: `connect`,
  `subscribe`, `unsubscribe`, `publish`, `process_loop`, `handle_ack` and
  `disconnect`; failures raise `SessionError`.
- `iotjobs.demo.JobsDemo` joins these pieces into the job loop that the
  `iotjobs` command runs.

```python
from iotjobs.topics import update_topic, status_report

topic = update_topic("my-thing", "job-1")
payload = status_report("SUCCEEDED")
```

## What it does not do

- It only executes jobs; it does not create, list or cancel them.
- Only the `print`, `publish` and `exit` actions are understood.
- Unacknowledged publishes are kept in memory only and are lost when the
  process ends.
- Credentials are read from certificate and key files; no other key storage
  is supported.