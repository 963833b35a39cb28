import pytest

from provisioner.core.errors import (
    MAX_ERROR_LENGTH,
    CircuitOpenError,
    ConfigurationError,
    ExitCode,
    PermanentProviderError,
    StateConflictError,
    format_error_message,
    main_with_error_handling,
    summarize_error,
)
from provisioner.core.redaction import MASK, fingerprint, redact


def test_redact_masks_nested_secret_keys():
    data = {
        "hostname": "web-1",
        "Authorization": "Bearer abc",
        "nested": {"api_key": "k", "region": "eu"},
        "items": [{"password": "p"}, "plain"],
    }

    assert redact(data) == {
        "hostname": "web-1",
        "Authorization": MASK,
        "nested": {"api_key": MASK, "region": "eu"},
        "items": [{"password": MASK}, "plain"],
    }
    assert data["Authorization"] == "Bearer abc"


def test_fingerprint_is_stable_and_opaque():
    assert fingerprint("srv-1") == fingerprint("srv-1")
    assert fingerprint("srv-1") != fingerprint("srv-2")
    assert "srv-1" not in fingerprint("srv-1")


def test_format_error_message_redacts_details():
    error = PermanentProviderError("Provider rejected request", {"status": 422, "token": "t"})

    assert format_error_message(error) == "Provider rejected request (status=422, token=***)"


def test_summarize_error_hides_unexpected_exception_text():
    summary = summarize_error(RuntimeError("password=hunter2"))

    assert summary == "RuntimeError: unexpected driver error"


def test_summarize_error_truncates():
    assert len(summarize_error("x" * 2000)) == MAX_ERROR_LENGTH


def test_circuit_open_error_carries_retry_after():
    error = CircuitOpenError("hetzner", 12.34567)

    assert error.retry_after == 12.34567
    assert error.details == {"driver": "hetzner", "retry_after": 12.346}
    assert error.exit_code == ExitCode.BLOCKED


@pytest.mark.parametrize(
    "exc,code",
    [
        (ConfigurationError("bad"), ExitCode.CONFIG_ERROR),
        (PermanentProviderError("down"), ExitCode.PROVIDER_ERROR),
        (StateConflictError("busy"), ExitCode.BLOCKED),
        (KeyboardInterrupt(), 130),
        (ValueError("boom"), ExitCode.UNKNOWN_ERROR),
    ],
)
def test_main_with_error_handling_exit_codes(exc, code):
    @main_with_error_handling()
    def command() -> int:
        raise exc

    assert command() == code


def test_main_with_error_handling_passes_through_success():
    @main_with_error_handling()
    def command(value: int) -> int:
        return value

    assert command(0) == 0
