import pytest

from host_channel import CommandResult, HostCommandError, LocalChannel, SsmChannel


class TestLocalChannel:
    def test_captures_output_and_exit_code(self):
        channel = LocalChannel()

        ok = channel.run(["sh", "-c", "echo out; echo err >&2"])
        failed = channel.run(["sh", "-c", "exit 3"])

        assert ok.success
        assert ok.stdout == "out\n"
        assert ok.stderr == "err\n"
        assert failed.exit_code == 3
        assert not failed.success

    def test_missing_binary_is_a_failed_result(self):
        result = LocalChannel().run(["definitely-not-a-real-binary-xyz"])

        assert result.exit_code == 127
        assert "not found" in result.stderr

    def test_timeout_is_a_failed_result(self):
        result = LocalChannel().run(["sleep", "5"], timeout=1)

        assert result.exit_code == 124

    def test_write_then_read_file(self, tmp_path):
        channel = LocalChannel()
        target = tmp_path / "proxy.conf"
        content = "server {\n    return 301 https://$host$request_uri;\n}\n"

        written = channel.write_file(str(target), content, 0o600)

        assert written.success
        assert target.read_text() == content
        assert oct(target.stat().st_mode & 0o777) == oct(0o600)
        assert channel.read_file(str(target)) == content

    def test_read_missing_file_returns_none(self, tmp_path):
        assert LocalChannel().read_file(str(tmp_path / "absent")) is None


def test_command_result_quotes_arguments():
    result = CommandResult(["curl", "-H", "Upgrade: websocket"], 0)

    assert result.command == "curl -H 'Upgrade: websocket'"


class InvocationDoesNotExist(Exception):
    pass


class StubSsm:
    """Minimal stand-in for the boto3 SSM client."""

    class exceptions:
        InvocationDoesNotExist = InvocationDoesNotExist

    def __init__(self, invocations, send_error=None):
        self.invocations = list(invocations)
        self.send_error = send_error
        self.sent = []

    def send_command(self, **kwargs):
        if self.send_error:
            raise self.send_error
        self.sent.append(kwargs)
        return {"Command": {"CommandId": "cmd-1"}}

    def get_command_invocation(self, CommandId, InstanceId):
        item = self.invocations.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def test_ssm_channel_polls_until_terminal_status():
    client = StubSsm(
        [
            InvocationDoesNotExist(),
            {"Status": "InProgress"},
            {
                "Status": "Success",
                "ResponseCode": 0,
                "StandardOutputContent": "active\n",
                "StandardErrorContent": "",
            },
        ]
    )
    channel = SsmChannel("i-0123456789abcdef0", client=client, poll_interval=0)

    result = channel.run(["systemctl", "is-active", "nginx"], timeout=60)

    assert result.success
    assert result.stdout == "active\n"
    sent = client.sent[0]
    assert sent["InstanceIds"] == ["i-0123456789abcdef0"]
    assert sent["DocumentName"] == "AWS-RunShellScript"
    assert sent["Parameters"]["commands"] == ["systemctl is-active nginx"]
    assert sent["TimeoutSeconds"] == 60


def test_ssm_channel_reports_failed_command():
    client = StubSsm(
        [
            {
                "Status": "Failed",
                "ResponseCode": 1,
                "StandardOutputContent": "",
                "StandardErrorContent": "nginx: [emerg] invalid port\n",
            }
        ]
    )
    channel = SsmChannel("i-0123456789abcdef0", client=client, poll_interval=0)

    result = channel.run(["nginx", "-t"])

    assert result.exit_code == 1
    assert "invalid port" in result.stderr


def test_ssm_channel_timed_out_invocation():
    client = StubSsm([{"Status": "TimedOut", "ResponseCode": -1}])
    channel = SsmChannel("i-0123456789abcdef0", client=client, poll_interval=0)

    result = channel.run(["sleep", "999"], timeout=5)

    assert not result.success
    assert result.stderr == "Command TimedOut"
    assert client.sent[0]["TimeoutSeconds"] == 30


def test_ssm_channel_read_file_uses_cat():
    client = StubSsm(
        [{"Status": "Success", "ResponseCode": 0, "StandardOutputContent": "abc\n"}]
    )
    channel = SsmChannel("i-0123456789abcdef0", client=client, poll_interval=0)

    assert channel.read_file("/var/lib/hostconfig/nginx.applied") == "abc\n"
    assert client.sent[0]["Parameters"]["commands"] == ["cat /var/lib/hostconfig/nginx.applied"]


def test_ssm_channel_send_failure_raises():
    client = StubSsm([], send_error=RuntimeError("InvalidInstanceId"))
    channel = SsmChannel("i-0123456789abcdef0", client=client, poll_interval=0)

    with pytest.raises(HostCommandError, match="InvalidInstanceId") as excinfo:
        channel.run(["true"])

    assert excinfo.value.argv == ["true"]
