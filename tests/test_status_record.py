from status_record import SetupStatus, SsmStatusRecorder, status_key


class StubSsm:
    def __init__(self):
        self.calls = []

    def put_parameter(self, **kwargs):
        self.calls.append(kwargs)
        return {"Version": len(self.calls)}


def test_status_values_in_lifecycle_order():
    assert SetupStatus.values() == ["pending", "in-progress", "complete", "failed"]


def test_status_key():
    assert status_key("openclaw", "nginx") == "/openclaw/nginx/setup-status"
    assert status_key("/edge/", "proxy", "state") == "/edge/proxy/state"


def test_recorder_overwrites_parameter():
    client = StubSsm()
    recorder = SsmStatusRecorder("/openclaw/nginx/setup-status", client=client)

    recorder.record(SetupStatus.IN_PROGRESS)
    recorder.record(SetupStatus.COMPLETE)

    assert [c["Value"] for c in client.calls] == ["in-progress", "complete"]
    assert client.calls[0] == {
        "Name": "/openclaw/nginx/setup-status",
        "Value": "in-progress",
        "Type": "String",
        "Overwrite": True,
    }
