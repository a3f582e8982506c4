"""Tests for CheckGate."""

import pytest

from ..check_gate import CheckGate
from ..errors import AdtError
from ..types import CheckMessage, CheckResult


class TestCheckGate:
    @pytest.mark.asyncio
    async def test_passing_check(self, fake_adapter, descriptor, session_ctx):
        result = await CheckGate(fake_adapter).check(
            descriptor, session_ctx, proposed_content="CLASS zcl_test."
        )

        assert result.passed is True
        assert result.benign is False
        assert fake_adapter.checked == [("CLASS zcl_test.", "inactive")]
        assert session_ctx.current is fake_adapter.history[-1][2]

    @pytest.mark.asyncio
    async def test_persisted_version(self, fake_adapter, descriptor, session_ctx):
        await CheckGate(fake_adapter).check(descriptor, session_ctx, version="active")

        assert fake_adapter.checked == [(None, "active")]

    @pytest.mark.asyncio
    async def test_failing_check_is_returned(self, fake_adapter, descriptor, session_ctx):
        fake_adapter.check_results.append(
            CheckResult(passed=False, errors=[CheckMessage(text="Unknown statement", line=4)])
        )

        result = await CheckGate(fake_adapter).check(descriptor, session_ctx, "CLASS x.")

        assert result.passed is False
        assert result.benign is False
        assert result.summary() == "E: Unknown statement (line 4)"

    @pytest.mark.asyncio
    async def test_duplicate_check_error_is_benign(self, fake_adapter, descriptor, session_ctx):
        fake_adapter.fail("check", AdtError("Object ZCL_TEST has been checked already", 400))

        result = await CheckGate(fake_adapter).check(descriptor, session_ctx, "CLASS x.")

        assert result.passed is True
        assert result.benign is True
        assert "has been checked" in result.warnings[0].text
        assert session_ctx.current is fake_adapter.history[-1][2]

    @pytest.mark.asyncio
    async def test_duplicate_check_message_is_benign(self, fake_adapter, descriptor, session_ctx):
        fake_adapter.check_results.append(
            CheckResult(passed=False, errors=[CheckMessage(text="Version was checked before")])
        )

        result = await CheckGate(fake_adapter).check(descriptor, session_ctx)

        assert result.passed is True
        assert result.benign is True

    @pytest.mark.asyncio
    async def test_mixed_errors_are_not_benign(self, fake_adapter, descriptor, session_ctx):
        fake_adapter.check_results.append(
            CheckResult(
                passed=False,
                errors=[
                    CheckMessage(text="Version was checked before"),
                    CheckMessage(text="Unknown statement"),
                ],
            )
        )

        result = await CheckGate(fake_adapter).check(descriptor, session_ctx)

        assert result.passed is False
        assert result.benign is False

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, fake_adapter, descriptor, session_ctx):
        fake_adapter.fail("check", AdtError("Internal error", 500))

        with pytest.raises(AdtError, match="Internal error"):
            await CheckGate(fake_adapter).check(descriptor, session_ctx)
