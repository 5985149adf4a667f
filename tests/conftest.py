import subprocess
from pathlib import Path

import pytest

import sft_stata


SCRIPT_LINES = [
    "* Initial setup",
    "clear all",
    "set more off",
    "",
    "* Load data",
    'use "wages.dta", clear',
    "",
    "* Variable creation and preprocessing",
    "* generate new_var = .",
    "* replace new_var = .",
    "",
    "* Descriptive statistics",
    "summarize",
    "",
    "* Main analysis",
    "* regress y x1 x2 x3",
    "",
    "* Save results",
    '* outreg2 using "results.doc", replace',
    "",
    "exit",
    "",
]

SCRIPT = "\n".join(SCRIPT_LINES)


class FakeStata:
    """Stands in for subprocess.run: records the call and writes the batch log."""

    def __init__(self):
        self.calls = []
        self.scripts = []
        self.returncode = 0
        self.write_log = True
        self.stdout = ""
        self.stderr = ""
        self.error = None

    def __call__(self, cmd, **kwargs):
        self.calls.append((cmd, kwargs))
        if self.error is not None:
            raise self.error
        do_path = Path(cmd[-1])
        script = do_path.read_text(encoding="utf-8")
        self.scripts.append((do_path, script))
        if self.write_log:
            do_path.with_suffix(".log").write_text(f"log: {do_path.name}\n{script}", encoding="utf-8")
        return subprocess.CompletedProcess(cmd, self.returncode, self.stdout, self.stderr)


@pytest.fixture(autouse=True)
def workspace(tmp_path, tmp_path_factory, monkeypatch):
    """Point the tools at a temporary workspace and keep the TSV log out of the repo."""
    ws = tmp_path_factory.mktemp("workspace")
    monkeypatch.setattr(sft_stata, "_LOG", tmp_path / "sft_stata_log.tsv")
    monkeypatch.setitem(sft_stata.CONFIG, "workspace", ws)
    monkeypatch.setitem(sft_stata.CONFIG, "stata_path", "stata-test")
    monkeypatch.setitem(sft_stata.CONFIG, "timeout_sec", None)
    return ws


@pytest.fixture
def backup_dir(workspace):
    return workspace / ".stata-backups"


@pytest.fixture
def sample_do(workspace):
    path = workspace / "analysis.do"
    path.write_text(SCRIPT, encoding="utf-8")
    return path


@pytest.fixture
def twenty_line_do(workspace):
    path = workspace / "a.do"
    path.write_text("".join(f"display {n}\n" for n in range(1, 21)), encoding="utf-8")
    return path


@pytest.fixture
def fake_stata(monkeypatch):
    fake = FakeStata()
    monkeypatch.setattr(sft_stata.subprocess, "run", fake)
    return fake
