from __future__ import annotations

from imgflow_engine.core import errors


def test_configuration_errors_are_never_retryable() -> None:
    err = errors.ConfigurationError("bad wiring", retryable=True)
    assert err.retryable is False
    assert err.code == "CONFIGURATION_ERROR"

    nf = errors.ProviderNotFoundError("generator", "missing")
    assert isinstance(nf, errors.ConfigurationError)
    assert nf.code == "PROVIDER_NOT_FOUND"
    assert nf.provider == "missing"
    assert "missing" in str(nf)


def test_execution_errors_forward_retryable_flag() -> None:
    assert errors.NetworkError("timeout").retryable is True
    assert errors.UploadError("disk full").retryable is True
    assert errors.GenerationError("nope").retryable is False
    assert errors.GenerationError("rate limited", retryable=True).retryable is True
    assert errors.NetworkError("x").category == errors.ErrorCategory.NETWORK


def test_gating_rejection_is_distinct_category() -> None:
    err = errors.GatingRejectedError("flagged", categories=["violence"])
    assert err.category == errors.ErrorCategory.GATING
    assert err.code == "GATE_REJECTED"
    assert err.categories == ["violence"]
    assert err.retryable is False


def test_unsatisfiable_graph_error_lists_blocked_steps() -> None:
    err = errors.UnsatisfiableGraphError(
        [
            {"step": "x", "index": 0, "kind": "transform", "needs": ["y"]},
            {"step": "y", "index": 1, "kind": "transform", "needs": ["x"]},
        ]
    )
    msg = str(err)
    assert msg.startswith("Circular dependency or missing input detected in pipeline.")
    assert "x (transform) needs y" in msg
    assert "y (transform) needs x" in msg
    assert err.to_dict()["unsatisfied"][0]["needs"] == ["y"]
    assert errors.is_retryable(err) is False


def test_wrap_error_does_not_double_wrap() -> None:
    err = errors.TransformError("resize failed", provider="sharp")
    assert errors.wrap_error(err) is err

    wrapped = errors.wrap_error(KeyError("k"))
    assert isinstance(wrapped, errors.FlowError)
    assert isinstance(wrapped.__cause__, KeyError)
    assert errors.error_category(ValueError("v")) == errors.ErrorCategory.INTERNAL


def test_step_error_from_exc() -> None:
    try:
        raise errors.NetworkError("socket closed", provider="remote")
    except Exception as exc:
        err = errors.step_error_from_exc(exc)
    assert err.exc_type == "NetworkError"
    assert err.code == "NETWORK_ERROR"
    assert err.category == "network"
    assert err.retryable is True
    assert "socket closed" in (err.traceback or "")

    plain = errors.step_error_from_exc(ValueError("boom"))
    assert plain.category == "internal"
    assert plain.retryable is False
    assert plain.to_dict()["message"] == "boom"
