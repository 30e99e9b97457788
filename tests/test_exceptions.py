import importlib.util
import warnings

from clinic_relay.core import exceptions
from clinic_relay.core.exceptions import PayloadTooLargeError, RecognitionError, SchemaParseError


def test_module_defines_statuses_without_deprecation_warnings():
    module_spec = importlib.util.spec_from_file_location("exceptions_fresh_copy", exceptions.__file__)
    module = importlib.util.module_from_spec(module_spec)

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        module_spec.loader.exec_module(module)

    assert [str(w.message) for w in caught if issubclass(w.category, DeprecationWarning)] == []
    assert module.PayloadTooLargeError("x").status_code == 413


def test_payload_too_large_body():
    error = PayloadTooLargeError("Audio is too large (limit 10 bytes)")
    assert error.status_code == 413
    assert error.to_response_body() == {
        "error": {"message": "Audio is too large (limit 10 bytes)", "type": "payload_too_large"}
    }


def test_upstream_payload_passed_through():
    payload = {"error": {"code": 403, "message": "API key not valid"}}
    assert RecognitionError("API key not valid", status_code=403, payload=payload).to_response_body() == payload


def test_schema_parse_error_carries_excerpt():
    error = SchemaParseError("Summary output was not valid JSON", "x" * 5000)
    body = error.to_response_body()
    assert error.status_code == 502
    assert body["rawText"] == "x" * 2000
