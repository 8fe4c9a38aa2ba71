from __future__ import annotations

import json
import logging
import zipfile
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from as_built import __version__, cli
from as_built.config import DELIMITERS, DocumentKind, LlmProvider
from as_built.llm import LlmError, LlmErrorCode
from as_built.models import LlmResponse, TokenUsage

if TYPE_CHECKING:
    from pytest_mock import MockerFixture


def _project(root: Path) -> Path:
    (root / "src").mkdir(parents=True, exist_ok=True)
    (root / "src" / "index.ts").write_text("export const x = 1;\n", encoding="utf-8")
    (root / "package.json").write_text('{"name": "demo"}\n', encoding="utf-8")
    return root


def _documents(*kinds: DocumentKind) -> LlmResponse:
    text = "\n".join(f"{DELIMITERS[k][0]}\n# {k.value} document\n{DELIMITERS[k][1]}" for k in kinds)
    return LlmResponse(
        text=text,
        token_usage=TokenUsage(prompt_tokens=1000, completion_tokens=200),
        model_id="fake",
    )


@pytest.mark.integration
def test_scan_writes_documents(tmp_path: Path, mocker: MockerFixture, capsys: pytest.CaptureFixture[str]) -> None:
    project = _project(tmp_path / "project")
    out = tmp_path / "docs"
    generate = mocker.patch.object(
        cli.LlmGateway,
        "generate",
        new=mocker.AsyncMock(return_value=_documents(DocumentKind.AGENT, DocumentKind.HUMAN)),
    )

    exit_code = cli.main(["scan", str(project), "--provider", "anthropic", "--output", str(out)])

    assert exit_code == 0
    assert (out / "AS_BUILT_AGENT.md").read_text(encoding="utf-8") == "# AGENT document\n"
    assert (out / "AS_BUILT_HUMAN.md").exists()
    assert not (out / "PRD_DRIFT.md").exists()
    assert generate.await_args.args[0] is LlmProvider.CLAUDE
    stdout = capsys.readouterr().out
    assert "Collecting files... 2 files found (0 excluded)" in stdout
    assert "Scan complete!" in stdout


@pytest.mark.integration
def test_scan_with_reference_document_and_store(tmp_path: Path, mocker: MockerFixture) -> None:
    project = _project(tmp_path / "project")
    prd = tmp_path / "PRD.md"
    prd.write_text("# PRD\nShip a widget.\n", encoding="utf-8")
    store_dir = tmp_path / "scans"
    out = tmp_path / "docs"
    generate = mocker.patch.object(
        cli.LlmGateway,
        "generate",
        new=mocker.AsyncMock(
            return_value=_documents(DocumentKind.AGENT, DocumentKind.HUMAN, DocumentKind.DRIFT),
        ),
    )

    exit_code = cli.main(
        ["scan", str(project), "--prd", str(prd), "--store-dir", str(store_dir), "--output", str(out)],
    )

    assert exit_code == 0
    assert (out / "PRD_DRIFT.md").exists()
    assert "Ship a widget." in generate.await_args.args[2]
    records = [json.loads(p.read_text(encoding="utf-8")) for p in store_dir.glob("*.json")]
    assert len(records) == 1
    assert records[0]["status"] == "completed"
    assert records[0]["project_name"] == "project"


@pytest.mark.integration
def test_scan_from_archive(tmp_path: Path, mocker: MockerFixture) -> None:
    archive = tmp_path / "upload.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("demo-main/package.json", '{"name": "demo"}')
        zf.writestr("demo-main/src/app.py", "print(1)\n")
    mocker.patch.object(
        cli.LlmGateway,
        "generate",
        new=mocker.AsyncMock(return_value=_documents(DocumentKind.AGENT, DocumentKind.HUMAN)),
    )

    exit_code = cli.main(["scan", "--archive", str(archive), "--output", str(tmp_path / "docs")])

    assert exit_code == 0
    assert (tmp_path / "docs" / "AS_BUILT_AGENT.md").exists()


@pytest.mark.integration
def test_failed_scan_exits_with_one(
    tmp_path: Path,
    mocker: MockerFixture,
    capsys: pytest.CaptureFixture[str],
) -> None:
    project = _project(tmp_path / "project")
    mocker.patch.object(
        cli.LlmGateway,
        "generate",
        new=mocker.AsyncMock(side_effect=LlmError(LlmErrorCode.AUTH_ERROR, LlmProvider.GEMINI, "bad key", 401)),
    )

    exit_code = cli.main(["scan", str(project), "--output", str(tmp_path / "docs")])

    assert exit_code == 1
    assert "Authentication failed with Google Gemini" in capsys.readouterr().err
    assert not (tmp_path / "docs").exists()


@pytest.mark.integration
def test_unsupported_reference_format_is_an_input_error(
    tmp_path: Path,
    mocker: MockerFixture,
    capsys: pytest.CaptureFixture[str],
) -> None:
    project = _project(tmp_path / "project")
    prd = tmp_path / "PRD.docx"
    prd.write_bytes(b"PK")
    generate = mocker.patch.object(cli.LlmGateway, "generate", new=mocker.AsyncMock())

    exit_code = cli.main(["scan", str(project), "--prd", str(prd)])

    assert exit_code == 2
    assert 'Unsupported PRD format: ".docx"' in capsys.readouterr().err
    generate.assert_not_awaited()


@pytest.mark.integration
def test_unknown_provider_is_an_input_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = cli.main(["collect", str(_project(tmp_path)), "--provider", "mistral"])

    assert exit_code == 2
    assert "Unknown provider" in capsys.readouterr().err


@pytest.mark.integration
def test_collect_lists_files_and_estimate(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    project = _project(tmp_path)
    (project / ".env").write_text("SECRET=1\n", encoding="utf-8")

    exit_code = cli.main(["collect", str(project), "--provider", "openai"])

    assert exit_code == 0
    out = capsys.readouterr().out
    lines = out.splitlines()
    assert lines[0] == "package.json (17 bytes) [HIGH-SIGNAL]"
    assert lines[1] == "src/index.ts (20 bytes)"
    assert "files=2 excluded=1" in out
    assert "of openai default" in out
    assert ".env" not in out


@pytest.mark.integration
def test_collect_reads_project_defaults(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    project = _project(tmp_path)
    (project / "lib").mkdir()
    (project / "lib" / "util.ts").write_text("export {};\n", encoding="utf-8")
    (project / ".asbuiltrc").write_text("subdir: lib\nprovider: claude\npremium: true\n", encoding="utf-8")

    exit_code = cli.main(["collect", str(project)])

    assert exit_code == 0
    out = capsys.readouterr().out
    assert out.splitlines()[0] == "lib/util.ts (11 bytes)"
    assert "of claude premium" in out


@pytest.mark.integration
def test_version_flag(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc_info:
        cli.parse_args(["--version"])

    assert exc_info.value.code == 0
    assert __version__ in capsys.readouterr().out


@pytest.mark.integration
def test_mistyped_subdirectory_is_an_input_error(
    tmp_path: Path,
    mocker: MockerFixture,
    capsys: pytest.CaptureFixture[str],
) -> None:
    project = _project(tmp_path / "project")
    generate = mocker.patch.object(cli.LlmGateway, "generate", new=mocker.AsyncMock())

    scan_exit = cli.main(["scan", str(project), "--subdir", "scr"])
    scan_err = capsys.readouterr().err
    collect_exit = cli.main(["collect", str(project), "--subdir", "scr"])
    collect_err = capsys.readouterr().err

    assert scan_exit == 2
    assert collect_exit == 2
    assert "Subdirectory not found: 'scr'" in scan_err
    assert "Subdirectory not found: 'scr'" in collect_err
    generate.assert_not_awaited()


@pytest.mark.integration
def test_log_file_receives_json_events(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    project = _project(tmp_path / "project")
    log_file = tmp_path / "as_built.log"
    root_logger = logging.getLogger()
    saved_handlers, saved_level = root_logger.handlers[:], root_logger.level

    try:
        exit_code = cli.main(["collect", str(project), "--log-file", str(log_file)])
    finally:
        for handler in root_logger.handlers:
            handler.close()
        root_logger.handlers[:] = saved_handlers
        root_logger.setLevel(saved_level)

    assert exit_code == 0
    events = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]
    assert events
    assert all({"event", "level", "timestamp"} <= event.keys() for event in events)
    assert "package.json" in capsys.readouterr().out
