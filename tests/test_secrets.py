"""Tests for secret resolution, masking and the logging filter."""

from __future__ import annotations

import io
import logging

import pytest

from conduit.engine.context import RunContext
from conduit.engine.models import TriggerEvent, TriggerKind
from conduit.engine.secrets import EnvSecretResolver, SecretMasker, StaticSecretResolver
from conduit.errors import SecretNotFound
from conduit.logs import MaskingFilter, install_masking


def make_context(resolver=None, masker=None) -> RunContext:
    return RunContext(
        run_id="run-1",
        workflow_name="ci",
        event=TriggerEvent(kind=TriggerKind.PUSH, ref="refs/heads/main"),
        resolver=resolver,
        masker=masker or SecretMasker(),
    )


class TestResolvers:
    async def test_static_resolver(self):
        resolver = StaticSecretResolver({"repository": {"TOKEN": "abc"}})
        assert await resolver.resolve("repository", "TOKEN") == "abc"
        with pytest.raises(SecretNotFound, match="TOKEN"):
            await resolver.resolve("production", "TOKEN")

    async def test_env_resolver_scoped_then_repository(self):
        resolver = EnvSecretResolver(
            environ={
                "CONDUIT_SECRET_PRODUCTION_DB_PASSWORD": "prod-pw",
                "CONDUIT_SECRET_DB_PASSWORD": "repo-pw",
            }
        )
        assert await resolver.resolve("production", "db-password") == "prod-pw"
        assert await resolver.resolve("repository", "db-password") == "repo-pw"
        with pytest.raises(SecretNotFound):
            await resolver.resolve("staging", "db-password")


class TestRunContextSecrets:
    async def test_environment_scope_wins(self):
        resolver = StaticSecretResolver(
            {"repository": {"TOKEN": "repo"}, "production": {"TOKEN": "prod"}}
        )
        ctx = make_context(resolver)
        assert await ctx.resolve_secret("TOKEN", "production") == "prod"
        assert await ctx.resolve_secret("TOKEN") == "repo"

    async def test_falls_back_to_repository(self):
        ctx = make_context(StaticSecretResolver({"repository": {"TOKEN": "repo"}}))
        assert await ctx.resolve_secret("TOKEN", "staging") == "repo"

    async def test_missing_returns_none(self):
        ctx = make_context(StaticSecretResolver({}))
        assert await ctx.resolve_secret("TOKEN", "staging") is None

    async def test_resolved_value_registered_with_masker(self):
        ctx = make_context(StaticSecretResolver({"repository": {"TOKEN": "s3cr3t"}}))
        await ctx.resolve_secret("TOKEN")
        assert ctx.masker.mask("token is s3cr3t") == "token is ***"

    async def test_teardown_drops_values(self):
        ctx = make_context(StaticSecretResolver({"repository": {"TOKEN": "s3cr3t"}}))
        await ctx.resolve_secret("TOKEN")
        ctx.teardown()
        assert ctx.resolver is None
        assert await ctx.resolve_secret("TOKEN") is None
        # Late log lines are still masked
        assert "s3cr3t" not in ctx.masker.mask("s3cr3t")


class TestSecretMasker:
    def test_mask_all_occurrences(self):
        masker = SecretMasker()
        masker.add("hunter2")
        assert masker.mask("pw=hunter2 again hunter2") == "pw=*** again ***"

    def test_longer_values_first(self):
        masker = SecretMasker()
        masker.add("abc")
        masker.add("abcdef")
        assert masker.mask("xabcdefx") == "x***x"

    def test_multiline_secret_lines_masked(self):
        masker = SecretMasker()
        masker.add("line-one\nline-two")
        assert masker.mask("got line-two") == "got ***"

    def test_empty_values_ignored(self):
        masker = SecretMasker()
        masker.add("")
        masker.add(None)
        assert len(masker) == 0
        assert masker.mask("anything") == "anything"

    def test_custom_token(self):
        masker = SecretMasker("[masked]")
        masker.add("k3y")
        assert masker.mask_mapping({"a": "k3y", "b": "plain"}) == {"a": "[masked]", "b": "plain"}

    def test_clear(self):
        masker = SecretMasker()
        masker.add("k3y")
        masker.clear()
        assert masker.mask("k3y") == "k3y"


class TestMaskingFilter:
    def test_masks_formatted_message(self):
        masker = SecretMasker()
        masker.add("s3cr3t")
        record = logging.LogRecord("conduit.test", logging.INFO, __file__, 1, "token=%s", ("s3cr3t",), None)
        assert MaskingFilter(masker).filter(record) is True
        assert record.getMessage() == "token=***"
        assert record.args is None

    def test_install_masking_on_logger_handlers(self):
        masker = SecretMasker()
        masker.add("s3cr3t")
        logger = logging.getLogger("conduit.test.masking")
        stream = io.StringIO()
        handler = logging.StreamHandler(stream)
        logger.addHandler(handler)
        logger.propagate = False
        try:
            install_masking(masker, logger)
            logger.warning("deploying with %s", "s3cr3t")
        finally:
            logger.removeHandler(handler)
            logger.propagate = True
        assert stream.getvalue().strip() == "deploying with ***"

    def test_masks_exception_traceback(self):
        masker = SecretMasker()
        masker.add("s3cr3t")
        logger = logging.getLogger("conduit.test.traceback")
        stream = io.StringIO()
        handler = logging.StreamHandler(stream)
        logger.addHandler(handler)
        logger.propagate = False
        try:
            install_masking(masker, logger)
            try:
                raise RuntimeError("login failed for s3cr3t")
            except RuntimeError:
                logger.exception("deploy failed")
        finally:
            logger.removeHandler(handler)
            logger.propagate = True
        output = stream.getvalue()
        assert "RuntimeError: login failed for ***" in output
        assert "s3cr3t" not in output
