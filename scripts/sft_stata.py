#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.11"
# dependencies = ["fastmcp", "pydantic>=2.0.0"]
# ///
"""Stata do-file tools: browse, edit by section, run whole files or selected lines.

Sections are located by marker comments (e.g. "* Main analysis"). Edits are
computed in memory, the target is backed up, then the new text is written.
Selected-line runs build a throwaway do-file next to the source, run it in
batch mode, and delete it (and its log) afterwards.

Usage:
    sft_stata.py browse [DIRECTORY]
    sft_stata.py read FILE
    sft_stata.py write FILE CONTENT [--no-backup]
    sft_stata.py edit FILE OPERATION --params JSON
    sft_stata.py template DESCRIPTION OUTPUT
    sft_stata.py sections FILE
    sft_stata.py run FILE
    sft_stata.py run-lines FILE START END
    sft_stata.py recover list|restore [--file FILE] [--backup NAME]
    sft_stata.py mcp-stdio

Examples:
    sft_stata.py edit analysis.do insert_section -p '{"section": "analysis", "content": "regress y x"}'
    sft_stata.py run-lines analysis.do 5 8
    STATA_PATH=/usr/local/stata18/stata-mp sft_stata.py run analysis.do
"""

import json
import os
import re
import shutil
import subprocess
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError


# =============================================================================
# LOGGING
# =============================================================================
_LEVELS = {"TRACE": 5, "DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "FATAL": 50}
_THRESHOLD = _LEVELS.get(os.environ.get("SFB_LOG_LEVEL", "INFO"), 20)
_LOG_DIR = os.environ.get("SFB_LOG_DIR", "")
_SCRIPT = Path(__file__).stem
_LOG = (
    Path(_LOG_DIR) / f"{_SCRIPT}_log.tsv"
    if _LOG_DIR
    else Path(__file__).parent / f"{_SCRIPT}_log.tsv"
)
_HEADER = "#timestamp\tscript\tlevel\tevent\tmessage\tdetail\tmetrics\ttrace\n"


def _log(
    level: str,
    event: str,
    msg: str,
    *,
    detail: str = "",
    metrics: str = "",
    trace: str = "",
):
    """Append TSV log line. Logging never crashes the main flow."""
    if _LEVELS.get(level, 20) < _THRESHOLD:
        return
    try:
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
        write_header = not _LOG.exists()
        with open(_LOG, "a") as f:
            if write_header:
                f.write(_HEADER)
            f.write(f"{ts}\t{_SCRIPT}\t{level}\t{event}\t{msg}\t{detail}\t{metrics}\t{trace}\n")
    except Exception:
        pass


# =============================================================================
# CONFIGURATION
# =============================================================================
EXPOSED = [
    "browse_do_files",
    "read_do_file",
    "write_do_file",
    "edit_do_file",
    "generate_do_template",
    "list_sections",
    "run_do_file",
    "run_do_selected_lines",
    "recover_do_file",
]

STATA_CANDIDATES = {
    "darwin": [
        "/Applications/Stata/StataBE.app/Contents/MacOS/StataBE",
        "/Applications/Stata/StataSE.app/Contents/MacOS/StataSE",
        "/Applications/Stata/StataMP.app/Contents/MacOS/StataMP",
        "/Applications/Stata 18/StataBE.app/Contents/MacOS/StataBE",
        "/Applications/Stata 17/StataBE.app/Contents/MacOS/StataBE",
        "/Applications/Stata 16/StataBE.app/Contents/MacOS/StataBE",
    ],
    "win32": [
        r"C:\Program Files\Stata18\StataMP-64.exe",
        r"C:\Program Files\Stata17\StataMP-64.exe",
        r"C:\Program Files\Stata16\StataMP-64.exe",
    ],
    "linux": [
        "/usr/local/stata/stata",
        "/usr/local/stata/stata-se",
        "/usr/local/stata/stata-mp",
    ],
}


def _find_stata_path() -> str:
    """Resolve the Stata executable: STATA_PATH, then platform candidates, then PATH."""
    override = os.environ.get("STATA_PATH")
    if override:
        return override
    candidates = STATA_CANDIDATES.get(sys.platform, STATA_CANDIDATES["linux"])
    for path in candidates:
        if Path(path).exists():
            return path
    for cmd in ["stata-mp", "stata-se", "stata", "StataMP-64", "StataSE-64"]:
        found = shutil.which(cmd)
        if found:
            return found
    return candidates[0]


def _timeout_from_env() -> float | None:
    """STATA_TIMEOUT in seconds; unset, 0 or unparseable means no limit."""
    raw = os.environ.get("STATA_TIMEOUT", "")
    try:
        return float(raw or 0) or None
    except ValueError:
        _log("WARN", "config", f"Ignoring non-numeric STATA_TIMEOUT: {raw!r}")
        return None


CONFIG = {
    "version": "1.0.0",
    "workspace": Path(os.environ.get("STATA_WORKSPACE") or Path.cwd()),
    "backup_dirname": ".stata-backups",
    "stata_path": _find_stata_path(),
    "timeout_sec": _timeout_from_env(),
    "comment_char": "*",
    "rule_width": 80,
}

# Markers only match comment lines; the first matching line is the section.
SECTION_MARKERS: dict[str, re.Pattern] = {
    "setup": re.compile(r"^\s*\*\s*initial\s+setup", re.IGNORECASE),
    "data": re.compile(r"^\s*\*\s*load\s+data", re.IGNORECASE),
    "preprocessing": re.compile(r"^\s*\*\s*(variable\s+creation|preprocessing)", re.IGNORECASE),
    "descriptive": re.compile(r"^\s*\*\s*descriptive\s+statistics", re.IGNORECASE),
    "analysis": re.compile(r"^\s*\*\s*main\s+analysis", re.IGNORECASE),
    "output": re.compile(r"^\s*\*\s*save\s+results", re.IGNORECASE),
}

SECTION_ALIASES = {"data-load": "data", "data_load": "data"}

SETUP_PATTERN = re.compile(
    r"^\s*(clear\s+all|set\s+more\s+off|capture\s+log\s+close)", re.IGNORECASE
)

TEMPLATE = """/*******************************************************************************
* Project: {description}
* Created: {created}
* Author: Stata MCP Server (LLM Generated)
* Purpose: {description}
*******************************************************************************/

* Initial setup
clear all
set more off
capture log close
log using "{stem}_session.log", replace

* Working directory
cd "{directory}"

* Load data
* use "your_data.dta", clear

* Inspect data
describe
summarize

* Variable creation and preprocessing
* generate new_var = .
* replace new_var = .

* Descriptive statistics
* tabulate var1
* summarize var2, detail

* Main analysis
* regress y x1 x2 x3

* Save results
* outreg2 using "results.doc", replace

* Graphs
* graph twoway scatter y x
* graph export "figure1.png", replace

log close
exit
"""


# =============================================================================
# ERRORS & MODELS
# =============================================================================
class StataToolError(Exception):
    """Base for every failure a tool call reports back as text."""


class ValidationError(StataToolError):
    pass


class UnknownSectionError(ValidationError):
    pass


class NotFoundError(StataToolError):
    pass


class SectionNotFoundError(NotFoundError):
    pass


class RangeError(StataToolError):
    pass


class ProcessSpawnError(StataToolError):
    """Stata could not be launched at all (missing or not executable)."""


class ExecutionResult(BaseModel):
    success: bool
    output: str
    log_path: str


class EditParams(BaseModel):
    name: str | None = Field(None, description="Variable name (add_variable)")
    definition: str | None = Field(None, description="Definition statement, e.g. 'generate lwage = ln(wage)'")
    label: str | None = Field(None, description="Optional variable label (add_variable)")
    type: str | None = Field(None, description="Analysis type, e.g. 'OLS' (add_analysis)")
    specification: str | None = Field(None, description="Analysis command(s) (add_analysis)")
    section: str | None = Field(None, description="Section name (insert_section)")
    content: str | None = Field(None, description="Block to insert (insert_section)")
    position: Literal["before", "after"] = Field("after", description="Insert before or after the marker")


EDIT_REQUIRED = {
    "add_variable": ("name", "definition"),
    "add_analysis": ("type", "specification"),
    "insert_section": ("section", "content"),
}


# =============================================================================
# CORE FUNCTIONS
# =============================================================================


# --- File access ---


def _resolve_path(path_str: str) -> Path:
    """Resolve against the workspace root. Absolute paths pass through."""
    path = Path(path_str).expanduser()
    if path.is_absolute():
        return path
    return Path(CONFIG["workspace"]) / path


def _read_text(path: Path) -> str:
    """Read without newline translation so CRLF files keep their '\\r'."""
    if not path.is_file():
        raise NotFoundError(f"File not found: {path}")
    with open(path, "r", encoding="utf-8", newline="") as f:
        return f.read()


def _write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(content)


def _split_lines(text: str) -> list[str]:
    """Split on '\\n' only; a trailing newline does not start another line."""
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return lines


def _remove_quietly(path: Path) -> bool:
    """Best-effort delete. Missing files are fine; other failures are logged."""
    try:
        path.unlink(missing_ok=True)
        return True
    except OSError as e:
        _log("WARN", "cleanup", f"Could not remove {path}", detail=str(e))
        return False


def _timestamp_slug() -> str:
    """UTC ISO-8601 with ':' and '.' replaced, safe for file names."""
    iso = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
    return re.sub(r"[:.]", "-", iso)


def _rule() -> str:
    return "=" * CONFIG["rule_width"]


def _list_do_files(directory: str = "") -> list[dict[str, Any]]:
    """List .do files in a directory, newest first."""
    search_dir = _resolve_path(directory) if directory else Path(CONFIG["workspace"])
    if not search_dir.is_dir():
        raise NotFoundError(f"Directory not found: {search_dir}")
    files = []
    for entry in search_dir.iterdir():
        if entry.is_file() and entry.suffix == ".do":
            stat = entry.stat()
            files.append({
                "name": entry.name,
                "path": entry,
                "size": stat.st_size,
                "modified": datetime.fromtimestamp(stat.st_mtime),
            })
    return sorted(files, key=lambda f: f["modified"], reverse=True)


# --- Backups ---


def _backup_dir() -> Path:
    return Path(CONFIG["workspace"]) / CONFIG["backup_dirname"]


def _create_backup(file_path: Path) -> Path | None:
    """Copy an existing file into the backup store. Returns backup path or None.

    Errors propagate so the caller never writes without a backup.
    """
    if not file_path.exists():
        return None
    backup_dir = _backup_dir()
    backup_dir.mkdir(parents=True, exist_ok=True)
    backup_path = backup_dir / f"{file_path.name}.{_timestamp_slug()}.bak"
    while backup_path.exists():
        time.sleep(0.001)
        backup_path = backup_dir / f"{file_path.name}.{_timestamp_slug()}.bak"
    shutil.copy2(file_path, backup_path)
    _log("INFO", "backup", str(file_path), detail=str(backup_path))
    return backup_path


def _backup_target_name(backup_name: str) -> str:
    """'analysis.do.2026-01-02T03-04-05-678Z.bak' -> 'analysis.do'."""
    stem = backup_name[: -len(".bak")] if backup_name.endswith(".bak") else backup_name
    return stem.rsplit(".", 1)[0]


# --- Section editor ---


def _is_comment(line: str) -> bool:
    return line.lstrip().startswith(CONFIG["comment_char"])


def _normalize_section(section: str) -> str:
    name = section.strip().lower()
    name = SECTION_ALIASES.get(name, name)
    if name not in SECTION_MARKERS:
        raise UnknownSectionError(
            f"Unknown section: {section}. Valid: {', '.join(SECTION_MARKERS)}"
        )
    return name


def _locate_section(text: str, section: str) -> int:
    """Return the 0-based index of the first line matching the section marker."""
    name = _normalize_section(section)
    marker = SECTION_MARKERS[name]
    for i, line in enumerate(text.split("\n")):
        if marker.search(line):
            return i
    raise SectionNotFoundError(f"Section not found: {name}")


def _insert_at(text: str, index: int, content: str, position: str = "after") -> str:
    """Insert a blank-padded block at a marker line and return the new text.

    'before' inserts at the marker itself. 'after' skips the marker and the
    run of comment lines directly below it.
    """
    if position not in ("before", "after"):
        raise ValidationError(f"position must be 'before' or 'after', got: {position}")
    lines = text.split("\n")
    insert_idx = index
    if position == "after":
        insert_idx = index + 1
        while insert_idx < len(lines) and _is_comment(lines[insert_idx]):
            insert_idx += 1
    # inserted lines follow the marker line's ending (CRLF or LF)
    eol = "\r" if lines[index].endswith("\r") else ""
    body = content.rstrip("\r\n").split("\n")
    block = [line.removesuffix("\r") + eol for line in ["", *body, ""]]
    lines[insert_idx:insert_idx] = block
    return "\n".join(lines)


def _insert_section(text: str, section: str, content: str, position: str = "after") -> str:
    index = _locate_section(text, section)
    return _insert_at(text, index, content, position)


def _add_variable(text: str, name: str, definition: str, label: str | None = None) -> str:
    block = [f"* Variable: {name}", definition]
    if label:
        block.append(f'label variable {name} "{label}"')
    return _insert_section(text, "preprocessing", "\n".join(block), "after")


def _add_analysis(text: str, analysis_type: str, specification: str) -> str:
    block = f"* {analysis_type} analysis\n{specification}"
    return _insert_section(text, "analysis", block, "after")


def _validate_edit_params(operation: str, params: dict[str, Any] | None) -> EditParams:
    """Check operation and its required params before anything is touched."""
    if operation not in EDIT_REQUIRED:
        raise ValidationError(
            f"Unknown operation: {operation}. Valid: {', '.join(EDIT_REQUIRED)}"
        )
    try:
        parsed = EditParams.model_validate(params or {})
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid params for {operation}: {problems}") from e
    missing = [field for field in EDIT_REQUIRED[operation] if not getattr(parsed, field)]
    if missing:
        raise ValidationError(f"{operation} requires params: {', '.join(missing)}")
    return parsed


def _apply_edit(text: str, operation: str, params: EditParams) -> str:
    if operation == "add_variable":
        return _add_variable(text, params.name, params.definition, params.label)
    if operation == "add_analysis":
        return _add_analysis(text, params.type, params.specification)
    return _insert_section(text, params.section, params.content, params.position)


# --- Selective executor ---


def _extract_range(text: str, start: int, end: int) -> list[tuple[int, str]]:
    """Return [(line_number, text), ...] for the 1-based inclusive range."""
    lines = [line.removesuffix("\r") for line in _split_lines(text)]
    total = len(lines)
    if start < 1 or end < 1 or start > total or end > total:
        raise RangeError(f"Invalid line range: {start}-{end} (file has lines 1-{total})")
    if start > end:
        raise RangeError(f"Start line ({start}) is after end line ({end})")
    return [(n, lines[n - 1]) for n in range(start, end + 1)]


def _synthesize(
    selected: list[tuple[int, str]],
    source: str,
    start: int,
    end: int,
    now: datetime | None = None,
) -> str:
    """Build a standalone do-file around the selected lines."""
    generated = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    border = "*" * 79
    header = (
        f"/{border}\n"
        "* Selected line execution\n"
        f"* Source file: {source}\n"
        f"* Lines: {start}-{end}\n"
        f"* Generated: {generated}\n"
        f"{border}/\n\n"
    )

    setup = ""
    if not any(SETUP_PATTERN.match(line) for _, line in selected):
        setup = "* Baseline setup\nset more off\ncapture log close\n\n"

    body = "\n".join(f"* Line {n}\n{line}" for n, line in selected)

    # exit is appended even when the selection already has one
    return header + setup + body + "\n\n* Selected lines finished\nexit\n"


def _batch_args(do_path: Path) -> list[str]:
    if sys.platform == "win32":
        return ["/e", "do", str(do_path)]
    return ["-b", "do", str(do_path)]


def _run_stata(
    do_path: Path,
    stata_path: str | None = None,
    timeout_sec: float | None = None,
) -> ExecutionResult:
    """Run a do-file in batch mode and collect the companion log.

    Raises ProcessSpawnError when Stata cannot be started. A non-zero exit is
    an ordinary result with success=False.
    """
    start_ms = time.time() * 1000
    stata = stata_path or CONFIG["stata_path"]
    timeout = timeout_sec if timeout_sec is not None else CONFIG["timeout_sec"]
    log_path = do_path.with_suffix(".log")
    cmd = [stata, *_batch_args(do_path)]

    try:
        proc = subprocess.run(
            cmd,
            cwd=str(do_path.parent),
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout or None,
        )
    except subprocess.TimeoutExpired:
        _log("WARN", "timeout", f"{timeout}s, do={do_path}")
        partial = log_path.read_text(encoding="utf-8", errors="replace") if log_path.exists() else ""
        return ExecutionResult(
            success=False,
            output=f"Stata timed out after {timeout}s and was terminated\n{partial}".rstrip(),
            log_path=str(log_path),
        )
    except OSError as e:
        raise ProcessSpawnError(f"Stata launch failed ({stata}): {e}") from e

    if log_path.exists():
        log_text = log_path.read_text(encoding="utf-8", errors="replace")
        output = log_text or proc.stdout or proc.stderr
        success = proc.returncode == 0
    else:
        output = proc.stdout or proc.stderr or f"No log file produced: {log_path}"
        success = False

    latency_ms = round(time.time() * 1000 - start_ms, 2)
    _log(
        "INFO" if success else "WARN",
        "stata",
        str(do_path),
        metrics=f"latency_ms={latency_ms} returncode={proc.returncode} success={success}",
    )
    return ExecutionResult(success=success, output=output, log_path=str(log_path))


def _execute_selected_lines(path: Path, start: int, end: int) -> ExecutionResult:
    """Run lines start..end of a do-file through a temporary do-file."""
    text = _read_text(path)
    selected = _extract_range(text, start, end)
    script = _synthesize(selected, str(path), start, end)
    temp_path = path.parent / f"temp_{path.stem}_lines_{start}_{end}_{_timestamp_slug()}.do"

    try:
        _write_text(temp_path, script)
        result = _run_stata(temp_path)
    finally:
        _remove_quietly(temp_path)
        _remove_quietly(temp_path.with_suffix(".log"))

    banner = f"Selected lines output:\nFile: {path}\nLines: {start}-{end}\n\n"
    return result.model_copy(update={"output": banner + result.output})


# =============================================================================
# TOOL IMPLEMENTATIONS
# =============================================================================


def _browse_impl(directory: str = "") -> str:
    """List do-files. CLI: browse, MCP: browse_do_files."""
    start_ms = time.time() * 1000
    try:
        files = _list_do_files(directory)
        listing = "\n".join(
            f"{f['name']} ({f['size'] / 1024:.1f}KB, modified: {f['modified']:%Y-%m-%d})"
            for f in files
        )
        latency_ms = round(time.time() * 1000 - start_ms, 2)
        _log("INFO", "browse", directory or str(CONFIG["workspace"]), metrics=f"latency_ms={latency_ms} files={len(files)}")
        return f"Do files ({directory or 'workspace'}):\n\n{listing or 'No files'}"
    except Exception as e:
        _log("ERROR", "browse", str(e), detail=directory)
        return f"Error: {e}"


def _read_impl(file_path: str) -> str:
    """Read a do-file. CLI: read, MCP: read_do_file."""
    try:
        if not file_path:
            raise ValidationError("file_path is required")
        path = _resolve_path(file_path)
        content = _read_text(path)
        _log("INFO", "read", str(path), metrics=f"bytes={len(content.encode('utf-8'))}")
        return f"File: {path}\n{_rule()}\n{content}"
    except Exception as e:
        _log("ERROR", "read", str(e), detail=file_path)
        return f"Error: {e}"


def _write_impl(file_path: str, content: str, create_backup: bool = True) -> str:
    """Create or overwrite a do-file. CLI: write, MCP: write_do_file."""
    start_ms = time.time() * 1000
    try:
        if not file_path:
            raise ValidationError("file_path is required")
        if content is None:
            raise ValidationError("content is required")
        path = _resolve_path(file_path)
        backup_path = _create_backup(path) if create_backup else None
        _write_text(path, content)

        latency_ms = round(time.time() * 1000 - start_ms, 2)
        _log("INFO", "write", str(path), metrics=f"latency_ms={latency_ms} bytes={len(content.encode('utf-8'))}")
        backup_line = f"\nBackup: {backup_path}" if backup_path else ""
        return f"File saved: {path}{backup_line}"
    except Exception as e:
        _log("ERROR", "write", str(e), detail=file_path)
        return f"Error: {e}"


def _edit_impl(file_path: str, operation: str, params: dict[str, Any] | None) -> str:
    """Section-aware edit. CLI: edit, MCP: edit_do_file.

    The new text is built first; the backup and write only happen if the
    edit succeeded, so a failed edit leaves the file untouched.
    """
    start_ms = time.time() * 1000
    try:
        if not file_path or not operation:
            raise ValidationError("file_path, operation and params are required")
        parsed = _validate_edit_params(operation, params)
        path = _resolve_path(file_path)
        text = _read_text(path)
        new_text = _apply_edit(text, operation, parsed)

        backup_path = _create_backup(path)
        _write_text(path, new_text)
        updated = _read_text(path)

        latency_ms = round(time.time() * 1000 - start_ms, 2)
        _log("INFO", "edit", str(path), detail=operation, metrics=f"latency_ms={latency_ms}")
        return (
            f"File updated: {path} ({operation})\n"
            f"Backup: {backup_path}\n\n"
            f"Updated content:\n{_rule()}\n{updated}"
        )
    except Exception as e:
        _log("ERROR", "edit", str(e), detail=f"{file_path} {operation}")
        return f"Error: {e}"


def _template_impl(description: str, output_path: str) -> str:
    """Write a sectioned do-file skeleton. CLI: template, MCP: generate_do_template."""
    try:
        if not description or not output_path:
            raise ValidationError("description and output_path are required")
        path = _resolve_path(output_path)
        content = TEMPLATE.format(
            description=description,
            created=datetime.now().strftime("%Y-%m-%d"),
            stem=path.stem,
            directory=path.parent,
        )
        backup_path = _create_backup(path)
        _write_text(path, content)
        _log("INFO", "template", str(path), detail=description)
        backup_line = f"\nBackup: {backup_path}" if backup_path else ""
        return f"Do-file template created: {path}{backup_line}\n\nContent:\n{_rule()}\n{_read_text(path)}"
    except Exception as e:
        _log("ERROR", "template", str(e), detail=output_path)
        return f"Error: {e}"


def _sections_impl(file_path: str) -> str:
    """Report marker line per registered section. CLI: sections, MCP: list_sections."""
    try:
        path = _resolve_path(file_path)
        text = _read_text(path)
        out = [f"Sections in {path}:"]
        for name in SECTION_MARKERS:
            try:
                out.append(f"  {name:<14} line {_locate_section(text, name) + 1}")
            except SectionNotFoundError:
                out.append(f"  {name:<14} missing")
        return "\n".join(out)
    except Exception as e:
        _log("ERROR", "sections", str(e), detail=file_path)
        return f"Error: {e}"


def _format_result(title: str, result: ExecutionResult) -> str:
    status = "succeeded" if result.success else "failed"
    return f"{title} {status}\nLog file: {result.log_path}\n\nOutput:\n{_rule()}\n{result.output}"


def _run_impl(file_path: str) -> str:
    """Run a whole do-file. CLI: run, MCP: run_do_file."""
    start_ms = time.time() * 1000
    try:
        if not file_path:
            raise ValidationError("file_path is required")
        path = _resolve_path(file_path)
        if not path.is_file():
            raise NotFoundError(f"File not found: {path}")
        result = _run_stata(path)
        latency_ms = round(time.time() * 1000 - start_ms, 2)
        _log("INFO", "run", str(path), metrics=f"latency_ms={latency_ms} success={result.success}")
        return _format_result("Run", result)
    except Exception as e:
        _log("ERROR", "run", str(e), detail=file_path)
        return f"Error: {e}"


def _run_lines_impl(file_path: str, start_line: int, end_line: int) -> str:
    """Run a line range. CLI: run-lines, MCP: run_do_selected_lines."""
    start_ms = time.time() * 1000
    try:
        if not file_path:
            raise ValidationError("file_path is required")
        for label, value in (("start_line", start_line), ("end_line", end_line)):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(f"{label} must be an integer, got: {value!r}")
        path = _resolve_path(file_path)
        result = _execute_selected_lines(path, start_line, end_line)
        latency_ms = round(time.time() * 1000 - start_ms, 2)
        _log(
            "INFO",
            "run_lines",
            str(path),
            detail=f"{start_line}-{end_line}",
            metrics=f"latency_ms={latency_ms} success={result.success}",
        )
        return _format_result("Selected lines run", result)
    except Exception as e:
        _log("ERROR", "run_lines", str(e), detail=f"{file_path}:{start_line}-{end_line}")
        return f"Error: {e}"


def _recover_impl(action: str, file_path: str = "", backup_name: str = "") -> str:
    """Backup management: list, restore. CLI: recover, MCP: recover_do_file."""
    try:
        action = action.lower()
        backup_dir = _backup_dir()
        if action == "list":
            if not backup_dir.exists():
                return "No backup directory found"
            backups = sorted(backup_dir.glob("*.bak"), key=lambda p: p.stat().st_mtime, reverse=True)
            if file_path:
                prefix = f"{Path(file_path).name}."
                backups = [b for b in backups if b.name.startswith(prefix)]
            if not backups:
                return "No backups found"
            out = [f"Backups: {len(backups)}", f"Location: {backup_dir}", ""]
            for b in backups:
                out.append(f"  {b.name} ({b.stat().st_size} bytes)")
            return "\n".join(out)
        if action == "restore":
            if not backup_name:
                raise ValidationError("restore requires backup_name")
            source = backup_dir / backup_name
            if not source.is_file():
                raise NotFoundError(f"Backup not found: {backup_name}")
            target = _resolve_path(file_path or _backup_target_name(backup_name))
            if not file_path and not target.is_file():
                raise ValidationError(
                    f"Cannot tell where {backup_name} belongs ({target} does not exist); pass file_path"
                )
            current_backup = _create_backup(target)
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)
            _log("INFO", "restore", str(target), detail=backup_name)
            out = [f"Restored {target} from {backup_name}"]
            if current_backup:
                out.append(f"Previous version backed up to: {current_backup}")
            return "\n".join(out)
        raise ValidationError(f"Unknown action: {action}. Use: list, restore")
    except Exception as e:
        _log("ERROR", "recover", str(e), detail=f"{action} {backup_name}")
        return f"Error: {e}"


# =============================================================================
# CLI INTERFACE
# =============================================================================
def main():
    import argparse

    parser = argparse.ArgumentParser(description="Stata do-file tools: section edits and selected-line runs")
    parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {CONFIG['version']}")
    parser.add_argument("-w", "--workspace", help="Workspace root (default: STATA_WORKSPACE or cwd)")
    parser.add_argument("-s", "--stata-path", help="Stata executable (default: STATA_PATH or platform default)")
    parser.add_argument("-t", "--timeout", type=float, help="Seconds before a Stata run is killed (0 = no limit)")
    sub = parser.add_subparsers(dest="command", help="Commands")

    sub.add_parser("mcp-stdio", help="Run as MCP server")

    p_browse = sub.add_parser("browse", help="List do-files in a directory")
    p_browse.add_argument("directory", nargs="?", default="")

    p_read = sub.add_parser("read", help="Read a do-file")
    p_read.add_argument("file_path")

    p_write = sub.add_parser("write", help="Create or overwrite a do-file (content '-' reads stdin)")
    p_write.add_argument("file_path")
    p_write.add_argument("content")
    p_write.add_argument("--no-backup", action="store_true", help="Skip backup of existing file")

    p_edit = sub.add_parser("edit", help="Section-aware edit")
    p_edit.add_argument("file_path")
    p_edit.add_argument("operation", choices=list(EDIT_REQUIRED))
    p_edit.add_argument("-p", "--params", required=True, help="Operation params as JSON object")

    p_tmpl = sub.add_parser("template", help="Generate a sectioned do-file template")
    p_tmpl.add_argument("description")
    p_tmpl.add_argument("output_path")

    p_sections = sub.add_parser("sections", help="Show which sections a do-file has")
    p_sections.add_argument("file_path")

    p_run = sub.add_parser("run", help="Run a do-file in batch mode")
    p_run.add_argument("file_path")

    p_lines = sub.add_parser("run-lines", help="Run selected lines of a do-file")
    p_lines.add_argument("file_path")
    p_lines.add_argument("start_line", type=int)
    p_lines.add_argument("end_line", type=int)

    p_recover = sub.add_parser("recover", help="List or restore backups")
    p_recover.add_argument("action", choices=["list", "restore"])
    p_recover.add_argument("-f", "--file", default="", help="File to filter by / restore to")
    p_recover.add_argument("-b", "--backup", default="", help="Backup file name (restore)")

    args = parser.parse_args()

    if args.workspace:
        CONFIG["workspace"] = Path(args.workspace).expanduser().resolve()
    if args.stata_path:
        CONFIG["stata_path"] = args.stata_path
    if args.timeout is not None:
        CONFIG["timeout_sec"] = args.timeout or None

    try:
        if args.command == "mcp-stdio":
            _run_mcp()
            return
        if args.command == "browse":
            output = _browse_impl(args.directory)
        elif args.command == "read":
            output = _read_impl(args.file_path)
        elif args.command == "write":
            content = sys.stdin.read() if args.content == "-" else args.content
            output = _write_impl(args.file_path, content, create_backup=not args.no_backup)
        elif args.command == "edit":
            params = json.loads(args.params)
            assert isinstance(params, dict), "--params must be a JSON object"
            output = _edit_impl(args.file_path, args.operation, params)
        elif args.command == "template":
            output = _template_impl(args.description, args.output_path)
        elif args.command == "sections":
            output = _sections_impl(args.file_path)
        elif args.command == "run":
            output = _run_impl(args.file_path)
        elif args.command == "run-lines":
            output = _run_lines_impl(args.file_path, args.start_line, args.end_line)
        elif args.command == "recover":
            output = _recover_impl(args.action, file_path=args.file, backup_name=args.backup)
        else:
            parser.print_help()
            return

        if output.startswith("Error: "):
            print(output, file=sys.stderr)
            sys.exit(1)
        print(output)
    except (AssertionError, json.JSONDecodeError) as e:
        _log("ERROR", args.command or "unknown", str(e))
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        _log("ERROR", args.command or "unknown", str(e))
        print(f"Unexpected error: {e}", file=sys.stderr)
        sys.exit(1)


# =============================================================================
# FASTMCP SERVER
# =============================================================================
def _run_mcp():
    from fastmcp import FastMCP

    mcp = FastMCP("stata")

    # --- Files ---

    @mcp.tool()
    def browse_do_files(directory: str = "") -> str:
        """List do-files in a directory, newest first.

        Args:
            directory: Directory to search (default: workspace root)
        """
        return _browse_impl(directory)

    @mcp.tool()
    def read_do_file(file_path: str) -> str:
        """Read a do-file from the local machine.

        Args:
            file_path: Absolute path or path relative to the workspace
        """
        return _read_impl(file_path)

    @mcp.tool()
    def write_do_file(file_path: str, content: str, create_backup: bool = True) -> str:
        """Create or overwrite a do-file.

        Args:
            file_path: Path to save to
            content: Full do-file content
            create_backup: Back up an existing file first (default: True)
        """
        return _write_impl(file_path, content, create_backup=create_backup)

    @mcp.tool()
    def generate_do_template(description: str, output_path: str) -> str:
        """Generate a do-file skeleton with the standard section markers.

        Args:
            description: What the analysis is about
            output_path: Where to write the do-file
        """
        return _template_impl(description, output_path)

    # --- Section edits ---

    @mcp.tool()
    def edit_do_file(file_path: str, operation: str, params: dict[str, Any]) -> str:
        """Edit part of a do-file by section.

        Operations and their params:
            add_variable: name, definition, label (optional)
            add_analysis: type, specification
            insert_section: section, content, position ('before' | 'after', default 'after')

        Sections: setup, data, preprocessing, descriptive, analysis, output.

        Args:
            file_path: Do-file to edit
            operation: add_variable, add_analysis or insert_section
            params: Operation params
        """
        return _edit_impl(file_path, operation, params)

    @mcp.tool()
    def list_sections(file_path: str) -> str:
        """Show the marker line of each section, or 'missing'.

        Args:
            file_path: Do-file to inspect
        """
        return _sections_impl(file_path)

    # --- Execution ---

    @mcp.tool()
    def run_do_file(file_path: str) -> str:
        """Run a do-file in Stata batch mode and return its log.

        Args:
            file_path: Do-file to run
        """
        return _run_impl(file_path)

    @mcp.tool()
    def run_do_selected_lines(file_path: str, start_line: int, end_line: int) -> str:
        """Run only some lines of a do-file.

        Args:
            file_path: Do-file to run
            start_line: First line (1-based)
            end_line: Last line (inclusive)
        """
        return _run_lines_impl(file_path, start_line, end_line)

    # --- Backups ---

    @mcp.tool()
    def recover_do_file(action: str, file_path: str = "", backup_name: str = "") -> str:
        """List or restore do-file backups.

        Args:
            action: list or restore
            file_path: Filter for list; restore target (default: derived from backup name)
            backup_name: Backup file name (for restore)
        """
        return _recover_impl(action, file_path=file_path, backup_name=backup_name)

    print("stata MCP server starting...", file=sys.stderr)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
