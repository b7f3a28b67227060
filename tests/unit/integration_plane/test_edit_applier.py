"""
Unit tests for the edit applier.

Coverage:
- Search/replace semantics: ordered pairs, first occurrence, no partial writes.
- Protocol checks: overwrite below full fidelity, allow-lists, path escape.
- Per-file independence, OS and encoding error mapping.
- Re-applying an applied edit set fails validation instead of editing twice.
"""

from __future__ import annotations

import tempfile
from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from forge_executor.domain.errors import ProtocolViolationError
from forge_executor.domain.models import EditAction, ExtractionLevel, FailureCode
from forge_executor.integration_plane.edit_applier import (
    EditApplier,
    EditApplyError,
    NonUniquePolicy,
    apply_search_replace,
)
from forge_executor.synthesis_plane.edit_protocol import SearchReplace, parse_edit_response

from .. import edit_payload, write_tree

ROUTES = "import { Router } from 'express';\n\nexport const router = Router();\n"


def _edit(path: str, *pairs: tuple[str, str]) -> dict[str, object]:
    return {
        "path": path,
        "action": "edit",
        "edits": [{"search": search, "replace": replace} for search, replace in pairs],
    }


@pytest.mark.unit
def test_missing_search_string_leaves_file_byte_identical(tmp_path: Path) -> None:
    write_tree(tmp_path, {"src/routes.ts": ROUTES})
    before = (tmp_path / "src/routes.ts").read_bytes()
    response = parse_edit_response(
        edit_payload(
            _edit(
                "src/routes.ts",
                ("export const router", "export const appRouter"),
                ("router.get('/missing')", "router.get('/health')"),
            )
        )
    )

    report = EditApplier().apply(response, tmp_path)

    assert not report.ok
    assert (tmp_path / "src/routes.ts").read_bytes() == before
    failure = report.failure
    assert failure is not None
    assert failure.label == "file_operation:file_edit_no_match"
    assert failure.details["edit_index"] == 1
    assert failure.details["search_preview"] == "router.get('/missing')"
    assert failure.recoverable is True


@pytest.mark.unit
def test_modify_of_file_delivered_as_signatures_is_rejected_before_writing(
    tmp_path: Path,
) -> None:
    write_tree(tmp_path, {"src/big.ts": ROUTES, "src/other.ts": "const a = 1;\n"})
    response = parse_edit_response(
        edit_payload(
            _edit("src/other.ts", ("const a = 1;", "const a = 2;")),
            {"path": "src/big.ts", "action": "modify", "content": "// rewritten\n"},
        )
    )

    with pytest.raises(ProtocolViolationError) as excinfo:
        EditApplier().apply(
            response,
            tmp_path,
            delivered_levels={
                "src/big.ts": ExtractionLevel.SIGNATURES,
                "src/other.ts": ExtractionLevel.FULL,
            },
        )

    assert excinfo.value.reason == "overwrite_below_full"
    assert excinfo.value.failure.code is FailureCode.CODEGEN_WRONG_ACTION
    assert (tmp_path / "src/big.ts").read_text(encoding="utf-8") == ROUTES
    assert (tmp_path / "src/other.ts").read_text(encoding="utf-8") == "const a = 1;\n"


def test_modify_of_full_file_and_create_of_new_file_are_written(tmp_path: Path) -> None:
    write_tree(tmp_path, {"src/app.ts": "old\n"})
    response = parse_edit_response(
        edit_payload(
            {"path": "src/app.ts", "action": "modify", "content": "new\n"},
            {"path": "src/health/index.ts", "action": "create", "content": "export {};\n"},
        )
    )

    report = EditApplier().apply(
        response, tmp_path, delivered_levels={"src/app.ts": ExtractionLevel.FULL}
    )

    assert report.ok
    assert report.files_modified == ("src/app.ts",)
    assert report.files_created == ("src/health/index.ts",)
    assert (tmp_path / "src/app.ts").read_text(encoding="utf-8") == "new\n"
    assert (tmp_path / "src/health/index.ts").read_text(encoding="utf-8") == "export {};\n"


def test_create_over_existing_file_requires_full_delivery(tmp_path: Path) -> None:
    write_tree(tmp_path, {"a.ts": "keep\n"})
    response = parse_edit_response(
        edit_payload({"path": "a.ts", "action": "create", "content": "replaced\n"})
    )

    with pytest.raises(ProtocolViolationError, match="not delivered"):
        EditApplier().apply(response, tmp_path)


def test_modify_of_missing_file_is_file_not_found(tmp_path: Path) -> None:
    response = parse_edit_response(
        edit_payload({"path": "ghost.ts", "action": "modify", "content": "x"})
    )

    report = EditApplier().apply(response, tmp_path)

    assert report.failure is not None
    assert report.failure.code is FailureCode.FILE_NOT_FOUND
    assert not (tmp_path / "ghost.ts").exists()


def test_edit_of_missing_file_is_file_not_found(tmp_path: Path) -> None:
    response = parse_edit_response(edit_payload(_edit("ghost.ts", ("a", "b"))))

    report = EditApplier().apply(response, tmp_path)

    (result,) = report.results
    assert result.action is EditAction.EDIT
    assert result.failure is not None
    assert result.failure.code is FailureCode.FILE_NOT_FOUND


def test_files_are_independent(tmp_path: Path) -> None:
    write_tree(tmp_path, {"a.ts": "alpha\n", "b.ts": "beta\n"})
    response = parse_edit_response(
        edit_payload(_edit("a.ts", ("alpha", "ALPHA")), _edit("b.ts", ("gamma", "GAMMA")))
    )

    report = EditApplier().apply(response, tmp_path)

    assert report.files_edited == ("a.ts",)
    assert (tmp_path / "a.ts").read_text(encoding="utf-8") == "ALPHA\n"
    assert (tmp_path / "b.ts").read_text(encoding="utf-8") == "beta\n"
    assert [item.path for item in report.results if not item.applied] == ["b.ts"]


def test_allow_list_rejects_paths_outside_the_restricted_set(tmp_path: Path) -> None:
    write_tree(tmp_path, {"a.ts": "alpha\n", "b.ts": "beta\n"})
    response = parse_edit_response(edit_payload(_edit("b.ts", ("beta", "BETA"))))

    with pytest.raises(ProtocolViolationError) as excinfo:
        EditApplier().apply(response, tmp_path, allowed_paths=["a.ts"])

    assert excinfo.value.reason == "path_not_allowed"
    assert (tmp_path / "b.ts").read_text(encoding="utf-8") == "beta\n"


def test_symlink_escape_is_rejected(tmp_path: Path) -> None:
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "secret.ts").write_text("secret\n", encoding="utf-8")
    project = tmp_path / "project"
    project.mkdir()
    (project / "link").symlink_to(outside, target_is_directory=True)
    response = parse_edit_response(edit_payload(_edit("link/secret.ts", ("secret", "leak"))))

    with pytest.raises(ProtocolViolationError) as excinfo:
        EditApplier().apply(response, project)

    assert excinfo.value.reason == "path_escape"
    assert (outside / "secret.ts").read_text(encoding="utf-8") == "secret\n"


def test_crlf_content_outside_the_edited_span_is_preserved(tmp_path: Path) -> None:
    (tmp_path / "win.ts").write_bytes(b"const a = 1;\r\nconst b = 2;\r\n")
    response = parse_edit_response(edit_payload(_edit("win.ts", ("const b = 2;", "const b = 3;"))))

    EditApplier().apply(response, tmp_path)

    assert (tmp_path / "win.ts").read_bytes() == b"const a = 1;\r\nconst b = 3;\r\n"


def test_permission_errors_are_mapped_and_not_healable(tmp_path: Path) -> None:
    def denied(path: Path, data: bytes) -> None:
        raise PermissionError(13, "Permission denied")

    response = parse_edit_response(
        edit_payload({"path": "new.ts", "action": "create", "content": "x"})
    )

    report = EditApplier(writer=denied).apply(response, tmp_path)

    failure = report.failure
    assert failure is not None
    assert failure.code is FailureCode.FILE_PERMISSION_ERROR
    assert failure.healable is False


def test_pairs_apply_in_order_to_the_working_copy() -> None:
    updated = apply_search_replace(
        "a = 1\n",
        [SearchReplace("a = 1", "a = 2"), SearchReplace("a = 2", "a = 3")],
    )

    assert updated == "a = 3\n"


def test_first_occurrence_only_is_replaced_by_default() -> None:
    assert apply_search_replace("x x x", [SearchReplace("x", "y")]) == "y x x"


def test_reject_ambiguous_policy_refuses_non_unique_search() -> None:
    with pytest.raises(EditApplyError) as excinfo:
        apply_search_replace(
            "x x x", [SearchReplace("x", "y")], policy=NonUniquePolicy.REJECT_AMBIGUOUS
        )

    assert excinfo.value.failure.details["occurrences"] == 3


def test_long_search_strings_are_previewed() -> None:
    with pytest.raises(EditApplyError) as excinfo:
        apply_search_replace("short", [SearchReplace("z" * 500, "")])

    preview = excinfo.value.failure.details["search_preview"]
    assert isinstance(preview, str)
    assert preview.endswith("...")
    assert len(preview) == 123


@given(
    content=st.text(alphabet="abc\n", max_size=40),
    search=st.text(alphabet="abc", min_size=1, max_size=3),
)
@settings(max_examples=100, derandomize=True, deadline=None)
def test_identity_replacement_is_idempotent(content: str, search: str) -> None:
    try:
        updated = apply_search_replace(content, [SearchReplace(search, search)])
    except EditApplyError:
        assert search not in content
        return

    assert updated == content


@pytest.mark.unit
def test_undecodable_file_is_a_write_failure_and_left_untouched(tmp_path: Path) -> None:
    legacy = tmp_path / "src" / "legacy.ts"
    legacy.parent.mkdir(parents=True)
    legacy.write_bytes(b"// caf\xe9\nexport const menu = 1;\n")
    write_tree(tmp_path, {"src/app.ts": "const a = 1;\n"})
    response = parse_edit_response(
        edit_payload(
            _edit("src/legacy.ts", ("menu = 1", "menu = 2")),
            _edit("src/app.ts", ("const a = 1;", "const a = 2;")),
        )
    )

    report = EditApplier().apply(response, tmp_path)

    assert not report.ok
    assert legacy.read_bytes() == b"// caf\xe9\nexport const menu = 1;\n"
    assert report.files_edited == ("src/app.ts",)
    failure = report.failure
    assert failure is not None
    assert failure.label == "file_operation:file_write_error"
    assert failure.details["path"] == "src/legacy.ts"


@given(
    prefix=st.text(alphabet="ab\n", max_size=20),
    search=st.text(alphabet="xy", min_size=1, max_size=4),
    suffix=st.text(alphabet="ab\n", max_size=20),
    replace=st.text(alphabet="ab", max_size=4),
)
@settings(max_examples=60, derandomize=True, deadline=None)
def test_reapplying_an_applied_edit_set_fails_search_validation(
    prefix: str, search: str, suffix: str, replace: str
) -> None:
    response = parse_edit_response(edit_payload(_edit("src/app.ts", (search, replace))))
    applier = EditApplier()
    with tempfile.TemporaryDirectory() as temp_dir:
        root = Path(temp_dir)
        target = root / "src" / "app.ts"
        target.parent.mkdir()
        target.write_bytes((prefix + search + suffix).encode("utf-8"))

        first = applier.apply(response, root)
        after_first = target.read_bytes()
        second = applier.apply(response, root)

        assert first.ok
        assert after_first == (prefix + replace + suffix).encode("utf-8")
        assert not second.ok
        assert second.failure is not None
        assert second.failure.code is FailureCode.FILE_EDIT_NO_MATCH
        assert target.read_bytes() == after_first


@given(
    content=st.text(alphabet="ab\n", min_size=1, max_size=30),
    pairs=st.lists(
        st.tuples(
            st.text(alphabet="ab", min_size=1, max_size=3),
            st.text(alphabet="abxy", max_size=3),
        ),
        max_size=4,
    ),
    position=st.integers(min_value=0, max_value=4),
)
@settings(max_examples=60, derandomize=True, deadline=None)
def test_edit_set_with_an_absent_search_leaves_file_bytes_unchanged(
    content: str, pairs: list[tuple[str, str]], position: int
) -> None:
    edits = list(pairs)
    edits.insert(min(position, len(edits)), ("qq", "zz"))
    response = parse_edit_response(edit_payload(_edit("src/app.ts", *edits)))
    with tempfile.TemporaryDirectory() as temp_dir:
        root = Path(temp_dir)
        target = root / "src" / "app.ts"
        target.parent.mkdir()
        target.write_bytes(content.encode("utf-8"))

        report = EditApplier().apply(response, root)

        assert not report.ok
        assert report.failure is not None
        assert report.failure.code is FailureCode.FILE_EDIT_NO_MATCH
        assert target.read_bytes() == content.encode("utf-8")
