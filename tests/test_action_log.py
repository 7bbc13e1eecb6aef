"""Tests for the hash-chained action log."""

import json

import pytest
import pytest_asyncio

from flotilla.action_log import GENESIS_HASH, ActionLog, sanitize_detail


@pytest_asyncio.fixture
async def action_log(tmp_path):
    log = ActionLog(tmp_path / "logs")
    await log.start()
    return log


def _entries(log: ActionLog) -> list[dict]:
    return [json.loads(line) for line in log._log_file().read_text().splitlines() if line]


class TestAppend:
    async def test_entries_are_chained(self, action_log):
        await action_log.append("registry", "register", detail={"agent_id": "worker-1"})
        await action_log.append("lifecycle", "spawn", success=False, detail={"error": "boom"})

        first, second = _entries(action_log)
        assert first["seq"] == 1
        assert first["prev_hash"] == GENESIS_HASH
        assert second["seq"] == 2
        assert second["prev_hash"] == first["hash"]
        assert second["success"] is False
        assert second["actor"] == "lifecycle"

        ok, msg = action_log.verify_chain()
        assert ok, msg
        assert "2 entries" in msg

    async def test_tampering_detected(self, action_log):
        await action_log.append("registry", "register", detail={"agent_id": "worker-1"})
        await action_log.append("registry", "deregister", detail={"agent_id": "worker-1"})

        path = action_log._log_file()
        lines = path.read_text().splitlines()
        entry = json.loads(lines[0])
        entry["detail"]["agent_id"] = "worker-9"
        lines[0] = json.dumps(entry, sort_keys=True)
        path.write_text("\n".join(lines) + "\n")

        ok, msg = action_log.verify_chain()
        assert not ok
        assert "line 1" in msg

    async def test_chain_resumes_after_restart(self, tmp_path, action_log):
        await action_log.append("registry", "register")

        reopened = ActionLog(tmp_path / "logs")
        await reopened.start()
        await reopened.append("registry", "deregister")

        entries = _entries(reopened)
        assert [e["seq"] for e in entries] == [1, 2]
        assert reopened.verify_chain()[0]

    async def test_disabled_writes_nothing(self, tmp_path):
        log = ActionLog(tmp_path / "logs", enabled=False)
        await log.start()
        await log.append("registry", "register")
        assert not (tmp_path / "logs").exists()

    async def test_details_sanitized_by_default(self, action_log):
        await action_log.append("lifecycle", "spawn", detail={"GITHUB_TOKEN": "abc123"})
        assert _entries(action_log)[0]["detail"] == {"GITHUB_TOKEN": "[redacted]"}

    def test_verify_missing_file(self, tmp_path):
        log = ActionLog(tmp_path / "logs")
        assert log.verify_chain() == (True, "no log file")


class TestSanitizeDetail:
    def test_redacts_sensitive_keys(self):
        clean = sanitize_detail(
            {"api_key": "k", "db_password": "p", "client_secret": "s", "name": "worker"}
        )
        assert clean == {
            "api_key": "[redacted]",
            "db_password": "[redacted]",
            "client_secret": "[redacted]",
            "name": "worker",
        }

    def test_nested_and_scalar_values(self):
        clean = sanitize_detail({"env": {"TOKEN": "t", "HOME": "/root"}, "count": 3, "ok": True})
        assert clean == {"env": {"TOKEN": "[redacted]", "HOME": "/root"}, "count": 3, "ok": True}

    def test_long_values_truncated(self):
        clean = sanitize_detail({"stderr": "x" * 2000, "args": ["y" * 600]})
        assert clean["stderr"].endswith("…[truncated]")
        assert len(clean["stderr"]) == 512 + len("…[truncated]")
        assert clean["args"][0].endswith("…[truncated]")
