import pytest

from powercli_runner.execution.records import LookupStatus, Record
from powercli_runner.execution.types import ExecutionResult, FailureKind


def test_record_lookups_are_case_insensitive() -> None:
    record = Record({"Success": True, "Version": "8.0.2"})
    assert record.get_bool("success").value is True
    assert record.get_str("VERSION").value == "8.0.2"
    assert "version" in record


def test_missing_and_null_fields_are_absent() -> None:
    record = Record({"ErrorMessage": None})
    assert record.get_str("ErrorMessage").status is LookupStatus.ABSENT
    assert record.get_str("Nope").status is LookupStatus.ABSENT
    assert record.get_str("Nope").or_default("fallback") == "fallback"


def test_wrong_type_is_reported() -> None:
    lookup = Record({"Count": "three"}).get_int("Count")
    assert lookup.status is LookupStatus.WRONG_TYPE
    assert "expected int" in lookup.detail


def test_string_booleans_and_scalar_lists() -> None:
    record = Record({"Success": "False", "Errors": "boom"})
    assert record.get_bool("Success").value is False
    assert record.get_list("Errors").value == ["boom"]


def test_success_result_cannot_carry_error() -> None:
    with pytest.raises(ValueError):
        ExecutionResult(success=True, error="boom")


def test_failed_result_defaults_to_script_failure() -> None:
    result = ExecutionResult(success=False, error="boom", elapsed_seconds=0)
    assert result.failure is FailureKind.SCRIPT
    assert result.elapsed_seconds > 0


def test_first_record_prefers_objects_then_json_output() -> None:
    with_objects = ExecutionResult(success=True, objects=["text", {"Name": "a"}])
    assert with_objects.first_record().get_str("Name").value == "a"
    from_output = ExecutionResult(success=True, output='noise\n{"Name": "b"}\n')
    assert from_output.first_record().get_str("Name").value == "b"
    assert ExecutionResult(success=True, output="plain").first_record() is None
