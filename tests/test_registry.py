"""Tests for the race-safe ingestion transformer cache."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import Session, select

from conftest import BROKEN_CODE, SNAPSHOT_VALUE_CODE, FakeProvider
from metriq.core.errors import SynthesisFailure
from metriq.core.template_catalog import get_template
from metriq.models.pipeline_models import IngestionTransformer
from metriq.transformation.code_generator import CodeSynthesizer, IngestionContext
from metriq.transformation.registry import TransformerRegistry, cache_key_for

SAMPLE = {"value": 42}


def _ctx():
    return IngestionContext(
        template_id="github-followers-count",
        integration_id="github",
        endpoint="/user",
        sample_response=SAMPLE,
    )


def _rows(engine):
    with Session(engine) as session:
        return session.exec(select(IngestionTransformer)).all()


class TestCacheKey:
    def test_shared_templates_key_by_template(self):
        assert cache_key_for(get_template("github-repo-stars"), "m-1") == "github-repo-stars"

    def test_per_metric_templates_key_by_metric(self):
        assert cache_key_for(get_template("gsheets-column-data"), "m-1") == "gsheets-column-data:m-1"


class TestInsertIfAbsent:
    def test_second_insert_returns_first_row(self, store):
        first = store.insert_transformer_if_absent("k", "t", "code-a")
        second = store.insert_transformer_if_absent("k", "t", "code-b")
        assert second.id == first.id
        assert second.code == "code-a"


class TestGetOrCreate:
    def test_creates_validated_transformer(self, store, engine):
        registry = TransformerRegistry(store, CodeSynthesizer(FakeProvider(SNAPSHOT_VALUE_CODE)))
        result = asyncio.run(registry.get_or_create("github-followers-count", _ctx(), SAMPLE, {}))
        assert result.was_created
        assert result.transformer.value_label == "Followers"
        assert result.transformer.created_at.tzinfo is not None
        assert len(_rows(engine)) == 1

    def test_existing_transformer_returned_without_synthesis(self, store):
        store.insert_transformer_if_absent("github-followers-count", "github-followers-count", BROKEN_CODE)
        provider = FakeProvider(SNAPSHOT_VALUE_CODE)
        registry = TransformerRegistry(store, CodeSynthesizer(provider))
        result = asyncio.run(registry.get_or_create("github-followers-count", _ctx(), SAMPLE, {}))
        assert not result.was_created
        assert result.transformer.code == BROKEN_CODE
        assert provider.calls == []

    def test_old_row_is_not_reported_as_created(self, store, engine):
        store.insert_transformer_if_absent("github-followers-count", "github-followers-count", SNAPSHOT_VALUE_CODE)
        with Session(engine) as session:
            row = session.exec(select(IngestionTransformer)).one()
            row.created_at = datetime.now(timezone.utc) - timedelta(hours=1)
            session.add(row)
            session.commit()
        # Simulate losing the race: the first read misses, the insert finds the old row
        registry = TransformerRegistry(store, CodeSynthesizer(FakeProvider(SNAPSHOT_VALUE_CODE)))
        original_get = store.get_ingestion_transformer
        calls = []

        def flaky_get(key):
            calls.append(key)
            return None if len(calls) == 1 else original_get(key)

        store.get_ingestion_transformer = flaky_get
        result = asyncio.run(registry.get_or_create("github-followers-count", _ctx(), SAMPLE, {}))
        assert not result.was_created

    def test_concurrent_creators_converge_on_one_row(self, store, engine):
        registry = TransformerRegistry(store, CodeSynthesizer(FakeProvider(SNAPSHOT_VALUE_CODE)))

        async def race():
            return await asyncio.gather(
                registry.get_or_create("github-followers-count", _ctx(), SAMPLE, {}),
                registry.get_or_create("github-followers-count", _ctx(), SAMPLE, {}),
            )

        first, second = asyncio.run(race())
        assert first.transformer.id == second.transformer.id
        assert len(_rows(engine)) == 1

    def test_invalid_code_persists_nothing(self, store, engine):
        registry = TransformerRegistry(store, CodeSynthesizer(FakeProvider(BROKEN_CODE)))
        with pytest.raises(SynthesisFailure):
            asyncio.run(registry.get_or_create("github-followers-count", _ctx(), SAMPLE, {}))
        assert _rows(engine) == []

    def test_delete(self, store):
        store.insert_transformer_if_absent("k", "t", "code")
        registry = TransformerRegistry(store, CodeSynthesizer(FakeProvider("x")))
        assert registry.delete("k")
        assert registry.get("k") is None
        assert not registry.delete("k")
