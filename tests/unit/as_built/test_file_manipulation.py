from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from as_built import file_manipulation
from as_built.exceptions import SubdirectoryNotFoundError

if TYPE_CHECKING:
    from pytest_mock import MockerFixture


def _write(root: Path, rel: str, content: str | bytes = "x") -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content, encoding="utf-8")
    return path


@pytest.mark.unit
def test_relpath_inside_and_outside_root(tmp_path: Path) -> None:
    inside = tmp_path / "src" / "app.py"
    outside = Path("/elsewhere/file.txt")

    assert file_manipulation.relpath(inside, tmp_path) == "src/app.py"
    assert file_manipulation.relpath(outside, tmp_path) == str(outside)


@pytest.mark.unit
def test_collect_files_orders_high_signal_first(tmp_path: Path) -> None:
    _write(tmp_path, "src/b.ts", "export const b = 1;\n")
    _write(tmp_path, "src/a.ts", "export const a = 1;\n")
    _write(tmp_path, "README.md", "# Demo\n")
    _write(tmp_path, "package.json", "{}\n")

    result = file_manipulation.collect_files(tmp_path)

    assert [f.relative_path for f in result.files] == ["README.md", "package.json", "src/a.ts", "src/b.ts"]
    assert [f.high_signal for f in result.files] == [True, True, False, False]
    assert result.excluded_count == 0


@pytest.mark.unit
def test_collect_files_records_tree_for_kept_and_excluded_files(tmp_path: Path) -> None:
    _write(tmp_path, "src/index.ts", "console.log(1);\n")
    _write(tmp_path, "assets/logo.png", b"\x89PNG\r\n")
    _write(tmp_path, "node_modules/pkg/index.js", "module.exports = 1;\n")

    result = file_manipulation.collect_files(tmp_path)

    assert result.tree == ("assets/", "assets/logo.png", "src/", "src/index.ts")
    assert [f.relative_path for f in result.files] == ["src/index.ts"]
    # logo.png by extension, node_modules as one pruned directory
    assert result.excluded_count == 2


@pytest.mark.unit
def test_collect_files_never_reads_env_files(tmp_path: Path, mocker: MockerFixture) -> None:
    _write(tmp_path, ".env", "SECRET=1\n")
    _write(tmp_path, "config/.env.local", "SECRET=2\n")
    _write(tmp_path, "main.py", "print('hi')\n")
    read_spy = mocker.spy(file_manipulation, "read_text_file")

    result = file_manipulation.collect_files(tmp_path)

    read_paths = [call.args[0].name for call in read_spy.call_args_list]
    assert read_paths == ["main.py"]
    assert [f.relative_path for f in result.files] == ["main.py"]
    assert result.excluded_count == 2


@pytest.mark.unit
def test_collect_files_skips_binary_and_invalid_utf8(tmp_path: Path) -> None:
    _write(tmp_path, "data.bin.txt", b"\x00\x01\x02\x03\x04\x05")
    _write(tmp_path, "latin1.txt", "caf\xe9".encode("latin-1"))
    _write(tmp_path, "ok.txt", "fine\n")

    result = file_manipulation.collect_files(tmp_path)

    assert [f.relative_path for f in result.files] == ["ok.txt"]
    assert result.excluded_count == 2
    assert "latin1.txt" in result.tree


@pytest.mark.unit
def test_collect_files_honors_root_gitignore(tmp_path: Path) -> None:
    _write(tmp_path, ".gitignore", "generated/\n*.local.ts\n")
    _write(tmp_path, "generated/client.ts", "x\n")
    _write(tmp_path, "src/app.local.ts", "x\n")
    _write(tmp_path, "src/app.ts", "x\n")

    result = file_manipulation.collect_files(tmp_path)

    assert [f.relative_path for f in result.files] == [".gitignore", "src/app.ts"]


@pytest.mark.unit
def test_collect_files_with_subdirectory_scope(tmp_path: Path) -> None:
    _write(tmp_path, "packages/api/src/server.ts", "x\n")
    _write(tmp_path, "packages/web/src/page.tsx", "x\n")
    _write(tmp_path, "package.json", "{}\n")

    result = file_manipulation.collect_files(tmp_path, "packages/api/")

    assert [f.relative_path for f in result.files] == ["packages/api/src/server.ts"]
    assert "packages/web/src/page.tsx" in result.tree


@pytest.mark.unit
def test_collect_files_total_size(tmp_path: Path) -> None:
    _write(tmp_path, "a.py", "a" * 10)
    _write(tmp_path, "b.py", "b" * 32)

    result = file_manipulation.collect_files(tmp_path)

    assert result.total_size_bytes == 42
    assert result.file_count == 2


@pytest.mark.unit
@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
def test_collect_files_does_not_follow_symlinks(tmp_path: Path) -> None:
    outside = tmp_path / "outside"
    _write(outside, "secret.txt", "do not read\n")
    project = tmp_path / "project"
    _write(project, "main.py", "print(1)\n")
    (project / "linked").symlink_to(outside, target_is_directory=True)
    (project / "link.txt").symlink_to(outside / "secret.txt")

    result = file_manipulation.collect_files(project)

    assert [f.relative_path for f in result.files] == ["main.py"]
    assert result.tree == ("main.py",)


@pytest.mark.unit
def test_collect_files_rejects_non_directory(tmp_path: Path) -> None:
    target = _write(tmp_path, "file.txt", "x")

    with pytest.raises(NotADirectoryError):
        file_manipulation.collect_files(target)


@pytest.mark.unit
def test_subdirectory_exists(tmp_path: Path) -> None:
    _write(tmp_path, "packages/api/server.ts")
    _write(tmp_path, "node_modules/pkg/index.js")
    _write(tmp_path, "README.md")

    assert file_manipulation.subdirectory_exists(tmp_path, "packages/api") is True
    assert file_manipulation.subdirectory_exists(tmp_path, "\\packages\\") is True
    assert file_manipulation.subdirectory_exists(tmp_path, "") is True
    assert file_manipulation.subdirectory_exists(tmp_path, "packages/web") is False
    assert file_manipulation.subdirectory_exists(tmp_path, "node_modules/pkg") is False
    assert file_manipulation.subdirectory_exists(tmp_path, "README.md") is False
    assert file_manipulation.subdirectory_exists(tmp_path, "packages/../packages") is False


@pytest.mark.unit
def test_collect_files_rejects_unknown_subdirectory(tmp_path: Path) -> None:
    _write(tmp_path, "src/app.ts")

    with pytest.raises(SubdirectoryNotFoundError) as exc_info:
        file_manipulation.collect_files(tmp_path, "scr")

    assert exc_info.value.subdirectory == "scr"
    assert "Subdirectory not found: 'scr'" in str(exc_info.value)


@pytest.mark.unit
def test_collect_files_is_deterministic(tmp_path: Path) -> None:
    for rel in ["zeta.py", "src/b.ts", "README.md", "src/a.ts", "Dockerfile", "alpha.py", "docs/guide.md"]:
        _write(tmp_path, rel)

    first = file_manipulation.collect_files(tmp_path)
    (tmp_path / "alpha.py").unlink()
    _write(tmp_path, "alpha.py")
    second = file_manipulation.collect_files(tmp_path)

    assert first.files == second.files
    assert first.tree == second.tree
    assert [f.relative_path for f in first.files] == [
        "Dockerfile",
        "README.md",
        "docs/guide.md",
        "alpha.py",
        "src/a.ts",
        "src/b.ts",
        "zeta.py",
    ]
