from __future__ import annotations

from pathlib import Path

import paramiko
import pytest

from oneshot.exceptions import ConnectError
from oneshot.ssh import Command, RemoteCommandChannel
from tests.conftest import FakeSSHFactory


@pytest.fixture
def channel(ssh: FakeSSHFactory, sleeps) -> RemoteCommandChannel:
    return RemoteCommandChannel(settle_delay=10.0, sleep=sleeps, client_factory=ssh)


@pytest.fixture
def session(channel):
    return channel.open("203.0.113.10", Path("/keys/job.pem"), "ec2-user")


class TestOpen:
    def test_settles_then_connects_with_key(self, channel, ssh, sleeps):
        session = channel.open("203.0.113.10", Path("/keys/job.pem"), "ec2-user")

        assert sleeps.calls[0] == 10.0
        client = ssh.clients[0]
        assert isinstance(client.policy, paramiko.AutoAddPolicy)
        assert client.connect_kwargs["hostname"] == "203.0.113.10"
        assert client.connect_kwargs["username"] == "ec2-user"
        assert client.connect_kwargs["key_filename"] == "/keys/job.pem"
        assert client.connect_kwargs["port"] == 22
        assert "Amazon Linux" in session.banner
        assert session.connected

    def test_retries_refused_connections(self, ssh, sleeps):
        ssh.refusals = 2
        channel = RemoteCommandChannel(settle_delay=0, connect_attempts=5, sleep=sleeps, client_factory=ssh)

        session = channel.open("203.0.113.10", Path("k.pem"), "ec2-user")

        assert len(ssh.clients) == 3
        assert all(c.closed for c in ssh.clients[:2])
        assert session.connected

    def test_gives_up_after_budget(self, ssh, sleeps):
        ssh.refusals = 10
        channel = RemoteCommandChannel(settle_delay=0, connect_attempts=3, sleep=sleeps, client_factory=ssh)

        with pytest.raises(ConnectError, match="ec2-user@203.0.113.10"):
            channel.open("203.0.113.10", Path("k.pem"), "ec2-user")
        assert len(ssh.clients) == 3


class TestRun:
    def test_prompt_completes_command(self, channel, session, ssh):
        ssh.shell.responses["ls"] = "job.sh\r\n"

        captured = channel.run(session, "ls")

        assert captured.complete
        assert "job.sh" in captured.output
        assert ssh.shell.commands == ["ls"]
        assert session.transcript == [captured]

    def test_missing_prompt_returns_partial_output(self, channel, session, ssh, sleeps):
        ssh.shell.silent.add("./job.sh")
        ssh.shell.responses["./job.sh"] = "still working\r\n"
        sleeps.calls.clear()

        captured = channel.run(session, Command("./job.sh", attempts=3, interval=1.0))

        assert not captured.complete
        assert "still working" in captured.output
        assert sleeps.calls == [1.0, 1.0, 1.0]

    def test_buffer_cleared_between_commands(self, channel, session, ssh):
        ssh.shell.responses["echo a"] = "a\r\n"
        ssh.shell.responses["echo b"] = "b\r\n"

        first = channel.run(session, "echo a")
        second = channel.run(session, "echo b")

        assert "a\r\n" in first.output
        assert "a\r\n" not in second.output

    def test_prompt_with_color_codes(self, channel):
        assert channel._prompt_seen("/home/ec2-user\r\n\x1b[01;32m[ec2-user@ip ~]$ \x1b[0m")

    def test_dollar_inside_output_is_not_a_prompt(self, channel):
        assert not channel._prompt_seen("price: $5 (still running)\r\n")
        assert channel._prompt_seen("[ec2-user@ip ~]$ ")

    def test_chaining_runs_in_order(self, session, ssh):
        session.run("mkdir -p work").run("cd work").run("ls")

        assert ssh.shell.commands == ["mkdir -p work", "cd work", "ls"]
        assert [c.command for c in session.transcript] == ssh.shell.commands

    def test_run_script(self, channel, session, ssh):
        outputs = channel.run_script(session, ["whoami", Command("uptime", attempts=2)])

        assert [o.command for o in outputs] == ["whoami", "uptime"]
        assert all(o.complete for o in outputs)

    def test_closed_session_rejects_commands(self, channel, session):
        channel.close(session)

        with pytest.raises(ConnectError):
            channel.run(session, "ls")


class TestClose:
    def test_idempotent(self, channel, session, ssh):
        channel.close(session)
        channel.close(session)
        session.close()

        assert ssh.shell.closed
        assert ssh.clients[0].close_calls == 1
        assert not session.connected

    def test_none_is_fine(self, channel):
        channel.close(None)

    def test_context_manager(self, session, ssh):
        with session:
            pass
        assert ssh.clients[0].closed


class TestUploadDirectory:
    def test_copies_tree_with_modes(self, channel, session, ssh, tmp_path):
        creds = tmp_path / ".aws"
        creds.mkdir()
        (creds / "credentials").write_text("[default]\n")
        (creds / "credentials").chmod(0o600)
        (creds / "sso").mkdir()
        (creds / "sso" / "cache.json").write_text("{}")

        copied = channel.upload_directory(session, creds, ".aws")

        assert copied == 2
        assert ssh.sftp.files[".aws/credentials"] == b"[default]\n"
        assert ssh.sftp.modes[".aws/credentials"] == 0o600
        assert ".aws/sso" in ssh.sftp.dirs
        assert ssh.sftp.closed
