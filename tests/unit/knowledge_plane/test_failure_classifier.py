"""
Unit tests for failure classification.

Coverage:
- Default rule ordering for compiler, file, codegen and infra errors.
- Phase hints, context-only rules and remediation hints.
- Totality and determinism over arbitrary text.
- YAML rule loading and validation.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from forge_executor.domain.models import FailureCode, FailurePhase
from forge_executor.knowledge_plane.failure_classifier import (
    ClassificationRule,
    FailureClassifier,
    fix_hint_for,
    parse_rules,
)

_SHARED = FailureClassifier()


@pytest.mark.unit
@pytest.mark.parametrize(
    ("text", "code"),
    [
        (
            "src/app.ts(2,7): error TS2304: Cannot find name 'router'.",
            FailureCode.COMPILE_TYPE_ERROR,
        ),
        (
            "src/app.ts(1,1): error TS2307: Cannot find module 'zod'.",
            FailureCode.COMPILE_MODULE_NOT_FOUND,
        ),
        ("src/app.ts(9,3): error TS1005: ';' expected.", FailureCode.COMPILE_SYNTAX_ERROR),
        ("src/app.py:3: error: Incompatible types  [assignment]", FailureCode.COMPILE_TYPE_ERROR),
        ("SyntaxError: Unexpected token '}'", FailureCode.COMPILE_SYNTAX_ERROR),
        (
            "search string not found in src/a.ts (edit 1 of 1): 'x'",
            FailureCode.FILE_EDIT_NO_MATCH,
        ),
        ("ENOENT: no such file or directory, open 'a.ts'", FailureCode.FILE_NOT_FOUND),
        ("EACCES: permission denied, open 'a.ts'", FailureCode.FILE_PERMISSION_ERROR),
        ("NO_TOOL_USE_IN_RESPONSE", FailureCode.CODEGEN_TOOL_NOT_CALLED),
        ("response is not valid JSON", FailureCode.CODEGEN_INVALID_FORMAT),
        ("request timed out after 120s", FailureCode.INFRA_TIMEOUT),
        ("connect ECONNREFUSED 127.0.0.1:443", FailureCode.INFRA_NETWORK_ERROR),
        ("FATAL ERROR: Reached heap limit", FailureCode.INFRA_OUT_OF_MEMORY),
        ("provider overloaded, status 529", FailureCode.INFRA_API_ERROR),
        ("the moon is made of cheese", FailureCode.INFRA_UNKNOWN),
    ],
)
def test_default_rules_classify_common_errors(text: str, code: FailureCode) -> None:
    assert _SHARED.classify(text).code is code


def test_first_matching_rule_wins_and_is_recorded() -> None:
    failure = FailureClassifier().classify(
        "src/app.ts(2,7): error TS2304: Cannot find name 'router'."
    )

    assert failure.phase is FailurePhase.COMPILATION
    assert failure.details["rule"] == "ts-type-error"
    assert failure.suggested_fix == "Import or declare 'router'"
    assert failure.healable is True


def test_context_only_rules_apply_with_matching_hint() -> None:
    classifier = FailureClassifier()

    assert classifier.classify("check timed out").code is FailureCode.INFRA_TIMEOUT
    assert (
        classifier.classify("check timed out", context=FailurePhase.VALIDATION).code
        is FailureCode.VALIDATION_TIMEOUT
    )


def test_phase_hint_prefers_rules_of_that_phase() -> None:
    classifier = FailureClassifier()
    text = "json payload timed out"

    assert classifier.classify(text).code is FailureCode.CODEGEN_INVALID_FORMAT
    assert (
        classifier.classify(text, context=FailurePhase.INFRASTRUCTURE).code
        is FailureCode.INFRA_TIMEOUT
    )


def test_unknown_text_is_counted() -> None:
    classifier = FailureClassifier()

    first = classifier.classify("   ")
    classifier.classify("still nothing recognizable")

    assert first.code is FailureCode.INFRA_UNKNOWN
    assert first.message == "empty error text"
    assert classifier.unknown_count == 2


def test_registered_rule_can_take_precedence() -> None:
    classifier = FailureClassifier()
    classifier.register(
        ClassificationRule(
            name="flaky-checker",
            pattern="ts2304",  # type: ignore[arg-type]
            code=FailureCode.VALIDATION_TEST_FAILED,
            recoverable=False,
        ),
        first=True,
    )

    failure = classifier.classify("error TS2304: Cannot find name 'x'.")

    assert failure.code is FailureCode.VALIDATION_TEST_FAILED
    assert failure.recoverable is False
    with pytest.raises(ValueError, match="already registered"):
        classifier.register(
            ClassificationRule(
                name="flaky-checker",
                pattern="x",  # type: ignore[arg-type]
                code=FailureCode.INFRA_UNKNOWN,
            )
        )


def test_details_are_merged_into_the_failure() -> None:
    failure = FailureClassifier().classify("EACCES: permission denied", details={"path": "a.ts"})

    assert failure.details == {"path": "a.ts", "rule": "permission-denied"}


@pytest.mark.parametrize(
    ("message", "hint"),
    [
        (
            "error TS2339: Property 'port' does not exist on type 'Config'.",
            "Add property 'port' to type 'Config' or check for typo",
        ),
        (
            "error TS7006: Parameter 'x' implicitly has an 'any' type.",
            "Add explicit type annotation to parameter",
        ),
        ("error TS2999: something else", None),
    ],
)
def test_fix_hints_for_type_errors(message: str, hint: str | None) -> None:
    assert fix_hint_for(FailureCode.COMPILE_TYPE_ERROR, message) == hint


def test_rules_load_from_yaml(tmp_path: Path) -> None:
    rules_path = tmp_path / "rules.yaml"
    rules_path.write_text(
        "- name: lint\n"
        "  pattern: 'eslint'\n"
        "  code: validation_test_failed\n"
        "  context: validation\n",
        encoding="utf-8",
    )

    classifier = FailureClassifier.from_yaml(rules_path)

    assert [rule.name for rule in classifier.rules] == ["lint"]
    assert (
        classifier.classify("eslint found 3 problems", context=FailurePhase.VALIDATION).code
        is FailureCode.VALIDATION_TEST_FAILED
    )


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ({"name": "x"}, "expected top-level YAML sequence"),
        ([{"name": "x", "pattern": "a"}], "missing required fields"),
        ([{"name": "x", "pattern": "a", "code": "nope"}], "unknown failure code"),
        ([{"name": "x", "pattern": "(", "code": "infra_unknown"}], "invalid regular expression"),
        ([{"name": "x", "pattern": "a", "code": "infra_unknown", "extra": 1}], "unknown fields"),
        (
            [{"name": "x", "pattern": "a", "code": "infra_unknown", "recoverable": "yes"}],
            "expected boolean",
        ),
        (
            [
                {"name": "x", "pattern": "a", "code": "infra_unknown"},
                {"name": "x", "pattern": "b", "code": "infra_unknown"},
            ],
            "duplicate classification rule name",
        ),
    ],
)
def test_invalid_rule_payloads_are_rejected(payload: object, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        parse_rules(payload)


@given(
    text=st.text(max_size=200),
    context=st.one_of(st.none(), st.sampled_from(list(FailurePhase))),
)
@settings(max_examples=150, derandomize=True, deadline=None)
def test_classification_is_total_and_deterministic(
    text: str, context: FailurePhase | None
) -> None:
    first = _SHARED.classify(text, context=context)
    second = _SHARED.classify(text, context=context)

    assert first == second
    assert first.code.phase is first.phase
    assert first.message
