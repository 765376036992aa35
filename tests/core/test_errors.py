"""Tests for g8r.core.errors module."""

import pytest

from g8r.core.errors import (
    CapabilityMismatch,
    ConfigurationError,
    CycleDetectedError,
    DependencyFailed,
    DutyNotFound,
    ErrorCategory,
    ErrorContext,
    ExecutionAbandoned,
    ExecutionCancelled,
    G8rError,
    HandlerNotFound,
    PermanentError,
    PlanError,
    RetryExhausted,
    SourceError,
    TransientError,
    UnresolvedDependencyError,
    failure_reason,
)


class TestErrorContext:
    """Test ErrorContext dataclass."""

    def test_to_dict_includes_set_fields(self):
        """to_dict includes only non-None fields plus metadata."""
        ctx = ErrorContext(duty="site-bucket", roster="aws-prod", metadata={"attempt": 2})
        d = ctx.to_dict()
        assert d == {"duty": "site-bucket", "roster": "aws-prod", "attempt": 2}


class TestG8rError:
    """Test the base error."""

    def test_defaults(self):
        err = G8rError("boom")
        assert err.message == "boom"
        assert err.category == ErrorCategory.INTERNAL
        assert err.retryable is False

    def test_with_context_sets_known_fields_and_metadata(self):
        err = PermanentError("bucket exists").with_context(duty="site-bucket", region="us-east-1")
        assert err.context.duty == "site-bucket"
        assert err.context.metadata == {"region": "us-east-1"}

    def test_cause_is_chained(self):
        cause = OSError("disk full")
        err = G8rError("write failed", cause=cause)
        assert err.__cause__ is cause
        assert err.to_dict()["cause"] == "disk full"

    def test_to_dict(self):
        err = TransientError("throttled").with_context(duty="dns")
        d = err.to_dict()
        assert d["error_type"] == "TransientError"
        assert d["reason"] == "TransientError"
        assert d["retryable"] is True
        assert d["context"] == {"duty": "dns"}


class TestTaxonomy:
    """Test the typed reasons and retryability of each error."""

    @pytest.mark.parametrize(
        "error, reason, retryable",
        [
            (ConfigurationError("x"), "ConfigurationError", False),
            (TransientError("x"), "TransientError", True),
            (SourceError("x"), "SourceError", True),
            (PermanentError("x"), "PermanentError", False),
            (ExecutionCancelled("x"), "Cancelled", False),
            (ExecutionAbandoned("x"), "Abandoned", False),
            (PlanError("x"), "PlanError", False),
        ],
    )
    def test_reason_and_retryable(self, error, reason, retryable):
        assert error.reason == reason
        assert error.retryable is retryable

    def test_handler_not_found_is_configuration_error(self):
        err = HandlerNotFound("Bucket", "aws", ["Echo/local"])
        assert isinstance(err, ConfigurationError)
        assert err.reason == "HandlerNotFound"
        assert "Echo/local" in str(err)

    def test_capability_mismatch_lists_missing_traits(self):
        err = CapabilityMismatch("gcp-prod", "Bucket/aws", {"aws", "s3"})
        assert err.missing == ["aws", "s3"]
        assert err.context.roster == "gcp-prod"
        assert err.context.handler == "Bucket/aws"

    def test_retry_exhausted_carries_attempts(self):
        last = TransientError("throttled")
        err = RetryExhausted("apply dns", 5, last, elapsed=12.5)
        assert err.attempts == 5
        assert err.cause is last
        assert "5 attempt(s)" in str(err)

    def test_dependency_failed_names_prerequisites(self):
        err = DependencyFailed("site-cert", ["site-dns", "site-bucket"])
        assert err.failed_dependencies == ["site-bucket", "site-dns"]
        assert err.context.duty == "site-cert"

    def test_plan_errors(self):
        cycle = CycleDetectedError(["a", "b", "a"])
        assert isinstance(cycle, PlanError)
        assert "a -> b -> a" in str(cycle)

        unresolved = UnresolvedDependencyError("b", ["z", "a"])
        assert unresolved.missing == ["a", "z"]

    def test_not_found_message_names_kind(self):
        assert str(DutyNotFound("site-bucket")) == "Duty not found: site-bucket"


class TestFailureReason:
    """Test failure_reason()."""

    def test_g8r_error_keeps_its_reason(self):
        assert failure_reason(TransientError("x")) == "TransientError"

    def test_foreign_exception_is_permanent(self):
        assert failure_reason(KeyError("spec")) == "PermanentError"
