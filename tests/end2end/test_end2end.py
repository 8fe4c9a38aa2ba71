import json
from pathlib import Path

import httpx
import pytest

from as_built import cli
from as_built.config import DELIMITERS, DocumentKind, LlmProvider, LlmTier
from as_built.file_manipulation import collect_files
from as_built.llm import LlmGateway
from as_built.tokens import TokenEstimator


def _write(path: Path, size: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("a" * size, encoding="utf-8")


def test_collection_of_a_typical_node_project(tmp_path: Path) -> None:
    _write(tmp_path / "src" / "index.ts", 500)
    _write(tmp_path / "node_modules" / "pkg" / "index.js", 10 * 1024)
    _write(tmp_path / ".env", 50)
    _write(tmp_path / "package.json", 200)

    result = collect_files(tmp_path)

    assert [f.relative_path for f in result.files] == ["package.json", "src/index.ts"]
    assert result.files[0].high_signal is True
    assert result.files[1].high_signal is False
    assert result.excluded_count == 2


def test_forty_thousand_tokens_fit_comfortably_in_a_128k_window() -> None:
    estimate = TokenEstimator().check_limit("x" * 160_000, LlmProvider.OPENAI, LlmTier.DEFAULT)

    assert estimate.estimated_tokens == 40_000
    assert estimate.context_window == 128_000
    assert estimate.exceeds_limit is False
    assert estimate.is_near_limit is False


def test_scan_end_to_end_over_http(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    project = tmp_path / "shop"
    (project / "src").mkdir(parents=True)
    (project / "src" / "cart.py").write_text("def total(items):\n    return sum(items)\n", encoding="utf-8")
    (project / "README.md").write_text("# Shop\n", encoding="utf-8")
    (project / ".env").write_text("SECRET=hunter2\n", encoding="utf-8")
    prd = tmp_path / "PRD.txt"
    prd.write_text("Users can pay by card.\n", encoding="utf-8")
    out = tmp_path / "docs"

    answer = "\n".join(
        f"{DELIMITERS[kind][0]}\n# {kind.value.title()}\nBody of {kind.value}.\n{DELIMITERS[kind][1]}"
        for kind in DocumentKind
    )
    prompts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["x-goog-api-key"] == "k-123"
        prompts.append(json.loads(request.content)["contents"][0]["parts"][0]["text"])
        return httpx.Response(
            200,
            json={
                "candidates": [{"content": {"parts": [{"text": answer}]}, "finishReason": "STOP"}],
                "usageMetadata": {"promptTokenCount": 900, "candidatesTokenCount": 300},
            },
        )

    gateway = LlmGateway(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)), environ={})
    monkeypatch.setattr(cli, "LlmGateway", lambda: gateway)

    exit_code = cli.main(
        ["scan", str(project), "--prd", str(prd), "--api-key", "k-123", "--output", str(out)],
    )

    assert exit_code == 0
    assert len(prompts) == 1
    assert "src/cart.py" in prompts[0]
    assert "Users can pay by card." in prompts[0]
    assert "hunter2" not in prompts[0]
    assert (out / "AS_BUILT_AGENT.md").read_text(encoding="utf-8").startswith("# Agent")
    assert "Body of HUMAN." in (out / "AS_BUILT_HUMAN.md").read_text(encoding="utf-8")
    assert "Body of DRIFT." in (out / "PRD_DRIFT.md").read_text(encoding="utf-8")


def test_collect_command_end_to_end(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write(tmp_path / "src" / "index.ts", 500)
    _write(tmp_path / "node_modules" / "pkg" / "index.js", 10 * 1024)
    _write(tmp_path / "package.json", 200)

    exit_code = cli.main(["collect", str(tmp_path), "--provider", "openai"])

    assert exit_code == 0
    out = capsys.readouterr().out
    assert "package.json (200 bytes) [HIGH-SIGNAL]" in out
    assert "src/index.ts (500 bytes)" in out
    assert "files=2 excluded=1" in out
    assert "node_modules" not in out
