"""
Unit tests for the validation gate.

Coverage:
- Skip semantics without a check marker file.
- Baseline comparison, timeouts and checks that cannot start.
- Scoping new diagnostics to changed files and their importers.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from forge_executor.verification_plane.validation_gate import ValidationGate

from .. import CHECK_ARGV, command_result, scripted_executor, write_tree

BASELINE_OUTPUT = "src/legacy.ts(10,3): error TS2322: Type 'string' is not assignable.\n"


def _project(tmp_path: Path, **files: str) -> Path:
    write_tree(tmp_path, {"tsconfig.json": "{}", **files})
    return tmp_path


@pytest.mark.asyncio
async def test_missing_marker_file_skips_the_check(tmp_path: Path) -> None:
    executor = scripted_executor(command_result(exit_code=2))
    gate = ValidationGate(executor=executor)

    baseline = await gate.capture_baseline(tmp_path)
    result = await gate.validate(tmp_path, ["src/app.ts"], baseline=baseline)

    assert result.passed is True
    assert result.skipped is True
    assert result.ran is False
    assert "No tsconfig.json found" in result.raw_output
    assert executor.calls == []


@pytest.mark.asyncio
async def test_preexisting_errors_do_not_fail_validation(tmp_path: Path) -> None:
    project = _project(tmp_path)
    shifted = "src/legacy.ts(14,3): error TS2322: Type 'string' is not assignable.\n"
    executor = scripted_executor(
        command_result(BASELINE_OUTPUT, exit_code=2),
        command_result(shifted, exit_code=2),
    )
    gate = ValidationGate(executor=executor)

    baseline = await gate.capture_baseline(project)
    result = await gate.validate(project, ["src/app.ts"], baseline=baseline)

    assert baseline.baseline_error_count == 1
    assert result.passed is True
    assert result.new_diagnostics == ()
    assert result.baseline_error_count == 1
    assert executor.calls[0].argv == CHECK_ARGV
    assert executor.calls[0].cwd == str(project)


@pytest.mark.asyncio
async def test_new_errors_fail_validation(tmp_path: Path) -> None:
    project = _project(tmp_path)
    after = BASELINE_OUTPUT + "src/app.ts(2,7): error TS2304: Cannot find name 'router'.\n"
    executor = scripted_executor(
        command_result(BASELINE_OUTPUT, exit_code=2),
        command_result(after, exit_code=2),
    )
    gate = ValidationGate(executor=executor)

    baseline = await gate.capture_baseline(project)
    result = await gate.validate(project, ["src/app.ts"], baseline=baseline)

    assert result.passed is False
    assert result.ran is True
    assert [item.code for item in result.new_diagnostics] == ["TS2304"]
    assert result.error_count == 2


@pytest.mark.asyncio
async def test_failing_exit_with_unparseable_output_counts_as_an_error(tmp_path: Path) -> None:
    project = _project(tmp_path)
    executor = scripted_executor(command_result("Segmentation fault\n", exit_code=139))

    result = await ValidationGate(executor=executor).validate(project)

    assert result.passed is False
    (diagnostic,) = result.new_diagnostics
    assert diagnostic.message == "Segmentation fault"


@pytest.mark.asyncio
async def test_timeout_fails_with_timed_out_flag(tmp_path: Path) -> None:
    project = _project(tmp_path)
    executor = scripted_executor(command_result(exit_code=None, timed_out=True))

    result = await ValidationGate(executor=executor, timeout_seconds=0.5).validate(project)

    assert result.passed is False
    assert result.timed_out is True
    assert executor.calls[0].timeout_seconds == 0.5


@pytest.mark.asyncio
async def test_command_that_cannot_start_is_not_run(tmp_path: Path) -> None:
    project = _project(tmp_path)
    executor = scripted_executor(argv=("something", "else"))

    result = await ValidationGate(executor=executor).validate(project)

    assert result.passed is False
    assert result.ran is False
    assert result.error is not None
    assert "executable not found" in result.error


@pytest.mark.asyncio
async def test_marker_can_be_disabled(tmp_path: Path) -> None:
    executor = scripted_executor(command_result(""))

    result = await ValidationGate(executor=executor, marker_file=None).validate(tmp_path)

    assert result.passed is True
    assert result.skipped is False


@pytest.mark.asyncio
async def test_scope_keeps_changed_files_and_their_importers(tmp_path: Path) -> None:
    project = _project(
        tmp_path,
        **{
            "src/app.ts": "export const app = 1;\n",
            "src/server.ts": "import { app } from './app';\n",
            "src/unrelated.ts": "export const x = 1;\n",
        },
    )
    after = (
        "src/app.ts(1,14): error TS2322: bad app.\n"
        "src/server.ts(1,10): error TS2305: no export.\n"
        "src/unrelated.ts(1,14): error TS2322: flaky.\n"
    )
    executor = scripted_executor(command_result(after, exit_code=2))
    gate = ValidationGate(executor=executor, scope_to_changed=True)

    result = await gate.validate(project, ["src/app.ts"])

    assert result.passed is False
    assert [item.file for item in result.new_diagnostics] == ["src/app.ts", "src/server.ts"]


@pytest.mark.asyncio
async def test_scope_falls_back_to_all_new_errors(tmp_path: Path) -> None:
    project = _project(tmp_path, **{"src/other.ts": "export const y = 2;\n"})
    after = "src/other.ts(1,14): error TS2322: unrelated.\n"
    executor = scripted_executor(command_result(after, exit_code=2))
    gate = ValidationGate(executor=executor, scope_to_changed=True)

    result = await gate.validate(project, ["src/app.ts"])

    assert [item.file for item in result.new_diagnostics] == ["src/other.ts"]


def test_gate_rejects_invalid_configuration() -> None:
    with pytest.raises(ValueError):
        ValidationGate(command=())
    with pytest.raises(ValueError):
        ValidationGate(timeout_seconds=0)
