"""Tests for the orchestration error hierarchy."""

from forge_codec.errors import StreamParseError
from phaseforge.errors import (
    ConfigurationError,
    InferenceError,
    OperationError,
    PhaseForgeError,
    RateLimitExceededError,
    SchemaValidationError,
    SecurityError,
)


def test_hierarchy():
    assert issubclass(RateLimitExceededError, InferenceError)
    assert issubclass(SecurityError, InferenceError)
    for cls in (ConfigurationError, InferenceError, SchemaValidationError, OperationError):
        assert issubclass(cls, PhaseForgeError)


def test_inference_error_to_dict():
    err = RateLimitExceededError("slow down", action="code_review", status_code=429)
    assert str(err) == "slow down"
    assert err.to_dict() == {
        "error": "RateLimitExceededError",
        "message": "slow down",
        "action": "code_review",
        "status_code": 429,
    }


def test_schema_validation_error():
    err = SchemaValidationError("PhaseConcept", 3, ["a", "b", "c"])
    assert str(err) == "Output did not match PhaseConcept after 3 attempt(s)"
    assert err.to_dict()["errors"] == ["a", "b", "c"]


def test_operation_error_prefixes_operation():
    err = OperationError("code_review", "empty review", detail={"files": 0})
    assert str(err) == "code_review: empty review"
    assert err.to_dict() == {
        "error": "OperationError",
        "message": "code_review: empty review",
        "operation": "code_review",
        "files": 0,
    }


def test_codec_errors_stay_separate():
    assert not issubclass(StreamParseError, PhaseForgeError)
