from __future__ import annotations

import os
import stat
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def test_output_lines_are_streamed() -> None:
    from romcurator.utils.external_tools import run_external_process

    lines = []
    result = run_external_process(
        exe_path=sys.executable,
        args=["-c", "import sys; print('one'); print('two', file=sys.stderr)"],
        tool_label="py",
        log_cb=lines.append,
    )

    assert result.success
    assert result.stdout.strip() == "one"
    assert result.stderr.strip() == "two"
    assert sorted(lines) == ["py [err]: two", "py: one"]


def test_timeout_stops_the_process() -> None:
    from romcurator.utils.external_tools import run_external_process

    result = run_external_process(
        exe_path=sys.executable,
        args=["-c", "import time; time.sleep(30)"],
        tool_label="sleeper",
        timeout_sec=0.3,
    )

    assert result.timed_out is True
    assert result.success is False
    assert result.outcome() == "timed out"


def test_cancel_token_stops_the_process() -> None:
    from romcurator.app.models import CancelToken
    from romcurator.utils.external_tools import run_external_process

    token = CancelToken()
    token.cancel()

    result = run_external_process(
        exe_path=sys.executable,
        args=["-c", "import time; time.sleep(30)"],
        tool_label="sleeper",
        cancel_token=token,
    )

    assert result.cancelled is True


@pytest.mark.skipif(os.name == "nt", reason="executable bit")
def test_find_chdman_prefers_env_var(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    from romcurator.utils.external_tools import find_chdman

    fake = tmp_path / "my-chdman"
    fake.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    fake.chmod(fake.stat().st_mode | stat.S_IXUSR)
    monkeypatch.setenv("ROMCURATOR_CHDMAN", str(fake))

    assert find_chdman() == str(fake)


def test_missing_chdman_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    from romcurator.exceptions import ExternalToolError
    from romcurator.utils.external_tools import run_chdman

    monkeypatch.setenv("PATH", "")
    monkeypatch.delenv("ROMCURATOR_CHDMAN", raising=False)

    with pytest.raises(ExternalToolError) as excinfo:
        run_chdman(["info", "-i", "x.chd"])
    assert excinfo.value.details["tool"] == "chdman"
