"""Tests for the pre-sync validator, body builder and headers hooks."""

import asyncio

import pytest

from locus_sync.sync.hooks import HookRunner


class TestValidate:
    """Tests for pre-sync validation, which fails open."""

    @pytest.mark.asyncio()
    async def test_no_validator_allows(self):
        assert await HookRunner().validate([{"n": 1}], {}) is True

    @pytest.mark.asyncio()
    async def test_explicit_false_rejects(self):
        hooks = HookRunner()
        hooks.validator = lambda payloads, extras: False
        assert await hooks.validate([{"n": 1}], {}) is False

    @pytest.mark.asyncio()
    async def test_validator_receives_payloads_and_extras(self):
        seen = []
        hooks = HookRunner()
        hooks.validator = lambda payloads, extras: seen.append((payloads, extras)) or True

        assert await hooks.validate([{"n": 1}], {"device": "d1"}) is True
        assert seen == [([{"n": 1}], {"device": "d1"})]

    @pytest.mark.asyncio()
    async def test_async_validator(self):
        async def validator(payloads, extras):
            return len(payloads) > 1

        hooks = HookRunner()
        hooks.validator = validator
        assert await hooks.validate([{"n": 1}], {}) is False
        assert await hooks.validate([{"n": 1}, {"n": 2}], {}) is True

    @pytest.mark.asyncio()
    async def test_error_fails_open(self):
        def validator(payloads, extras):
            raise RuntimeError("validator crashed")

        hooks = HookRunner()
        hooks.validator = validator
        assert await hooks.validate([{"n": 1}], {}) is True
        assert hooks.validation_pending is False

    @pytest.mark.asyncio()
    async def test_timeout_fails_open(self):
        """A validator that never answers does not block the send."""

        async def validator(payloads, extras):
            await asyncio.sleep(5)
            return False

        hooks = HookRunner(timeout=0.05)
        hooks.validator = validator
        assert await hooks.validate([{"n": 1}], {}) is True

    @pytest.mark.asyncio()
    async def test_only_one_validation_pending(self):
        """A second trigger proceeds while the first validation is outstanding."""
        calls = []
        gate = asyncio.Event()

        async def validator(payloads, extras):
            calls.append(payloads)
            await gate.wait()
            return False

        hooks = HookRunner()
        hooks.validator = validator

        first = asyncio.create_task(hooks.validate([{"n": 1}], {}))
        await asyncio.sleep(0)
        assert hooks.validation_pending is True

        assert await hooks.validate([{"n": 2}], {}) is True

        gate.set()
        assert await first is False
        assert calls == [[{"n": 1}]]
        assert hooks.validation_pending is False


class TestBuildBody:
    """Tests for the custom body builder."""

    @pytest.mark.asyncio()
    async def test_no_builder_uses_default(self):
        assert await HookRunner().build_body([{"n": 1}], {}) is None

    @pytest.mark.asyncio()
    async def test_custom_body_returned(self):
        hooks = HookRunner()
        hooks.body_builder = lambda payloads, extras: {"points": payloads, **extras}
        body = await hooks.build_body([{"n": 1}], {"device": "d1"})
        assert body == {"points": [{"n": 1}], "device": "d1"}

    @pytest.mark.asyncio()
    async def test_empty_body_passes_through(self):
        """An empty mapping is a skip signal, not a fallback."""
        hooks = HookRunner()
        hooks.body_builder = lambda payloads, extras: {}
        assert await hooks.build_body([{"n": 1}], {}) == {}

    @pytest.mark.asyncio()
    async def test_none_uses_default(self):
        hooks = HookRunner()
        hooks.body_builder = lambda payloads, extras: None
        assert await hooks.build_body([{"n": 1}], {}) is None

    @pytest.mark.asyncio()
    async def test_non_mapping_uses_default(self):
        hooks = HookRunner()
        hooks.body_builder = lambda payloads, extras: ["not", "a", "body"]
        assert await hooks.build_body([{"n": 1}], {}) is None

    @pytest.mark.asyncio()
    async def test_error_uses_default(self):
        def builder(payloads, extras):
            raise ValueError("bad payload")

        hooks = HookRunner()
        hooks.body_builder = builder
        assert await hooks.build_body([{"n": 1}], {}) is None

    @pytest.mark.asyncio()
    async def test_timeout_uses_default(self):
        async def builder(payloads, extras):
            await asyncio.sleep(5)
            return {"late": True}

        hooks = HookRunner(timeout=0.05)
        hooks.body_builder = builder
        assert await hooks.build_body([{"n": 1}], {}) is None


class TestHeaders:
    """Tests for the dynamic headers callback."""

    @pytest.mark.asyncio()
    async def test_no_callback(self):
        assert await HookRunner().headers() == {}

    @pytest.mark.asyncio()
    async def test_values_are_stringified(self):
        hooks = HookRunner()
        hooks.headers_callback = lambda: {"Authorization": "Bearer t", "X-Seq": 7}
        assert await hooks.headers() == {"Authorization": "Bearer t", "X-Seq": "7"}

    @pytest.mark.asyncio()
    async def test_error_returns_empty(self):
        def callback():
            raise RuntimeError("token store locked")

        hooks = HookRunner()
        hooks.headers_callback = callback
        assert await hooks.headers() == {}
