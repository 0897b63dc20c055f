# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/agentlab

from agentlab.errors import (
    APIError,
    CLIError,
    CommandError,
    TransportError,
    as_cli_error,
    describe_error,
    normalize_hints,
    redact,
    truncate_output,
)


def test_cli_error_next_step_is_set_once() -> None:
    err = CLIError("  boom  ", hints=["a", " a ", "", "b"])
    assert err.message == "boom"
    assert err.hints == ["a", "b"]

    err.with_next("agentlab sandbox list").with_next("agentlab other")
    assert err.next_step == "agentlab sandbox list"

    err.with_hints("b", "c")
    assert err.hints == ["a", "b", "c"]


def test_normalize_hints_keeps_order() -> None:
    assert normalize_hints(["z", "a", "z", "  "]) == ["z", "a"]


def test_redact_replaces_every_secret() -> None:
    text = "token s3cr3t rejected; s3cr3t again"
    assert redact(text, "s3cr3t", "", None) == "token [redacted] rejected; [redacted] again"


def test_describe_error_redacts_and_hints_auth_failures() -> None:
    """A 401 or 403 adds the credentials hint and never leaks the token."""
    # GIVEN an auth failure whose message echoes the token
    api_err = APIError(401, "bad token tok-123")

    # WHEN it is described for output
    message, next_step, hints = describe_error(api_err, "tok-123")

    # THEN the token is redacted and the hint is present
    assert message == "bad token [redacted]"
    assert next_step is None
    assert hints == ["verify the endpoint and token are correct"]


def test_describe_error_follows_cause() -> None:
    wrapped = CLIError("sandbox 9001 not found", "agentlab sandbox list")
    wrapped.__cause__ = APIError(403, "forbidden")
    _, next_step, hints = describe_error(wrapped)
    assert next_step == "agentlab sandbox list"
    assert "verify the endpoint and token are correct" in hints


def test_describe_error_plain_exception() -> None:
    assert describe_error(TransportError("dial unix: refused")) == ("dial unix: refused", None, [])
    assert describe_error(RuntimeError())[0] == "RuntimeError"


def test_api_error_not_found() -> None:
    assert APIError(404, "whatever").is_not_found()
    assert APIError(500, "sandbox not found").is_not_found("sandbox")
    assert not APIError(500, "workspace not found").is_not_found("sandbox")
    assert not APIError(409, "conflict").is_not_found()


def test_command_error_message_is_truncated() -> None:
    err = CommandError("install agentlabd", 2, "x" * 5000)
    assert str(err).startswith("install agentlabd (exit 2): xxx")
    assert str(err).endswith("...")
    assert str(err) == "install agentlabd (exit 2): " + "x" * 2048 + "..."


def test_truncate_output_keeps_first_two_kib() -> None:
    assert truncate_output("y" * 2048) == "y" * 2048
    assert truncate_output("y" * 2049) == "y" * 2048 + "..."


def test_as_cli_error_wraps_other_errors() -> None:
    original = TransportError("refused")
    wrapped = as_cli_error(original)
    assert isinstance(wrapped, CLIError)
    assert wrapped.__cause__ is original
    cli = CLIError("x")
    assert as_cli_error(cli) is cli
