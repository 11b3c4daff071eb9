"""METRIQ — Default Object Graph.

One place that wires store, fetcher, synthesizer and pipelines together
for the routes and the scheduler.
"""

from typing import Optional

from sqlalchemy.engine import Engine

from metriq.ai.base_provider import CodeGenerationProvider
from metriq.connectors.fetcher import IntegrationFetcher
from metriq.core.template_catalog import TemplateCatalog
from metriq.transformation.charts import ChartPipeline
from metriq.transformation.code_generator import CodeSynthesizer
from metriq.transformation.ingestion import IngestionPipeline
from metriq.transformation.orchestrator import RefreshOrchestrator
from metriq.transformation.registry import TransformerRegistry
from metriq.transformation.store import PipelineStore


def build_orchestrator(
    engine: Optional[Engine] = None,
    provider: Optional[CodeGenerationProvider] = None,
    fetcher: Optional[IntegrationFetcher] = None,
    catalog: Optional[TemplateCatalog] = None,
) -> RefreshOrchestrator:
    """Build the full pipeline. Defaults come from settings."""
    if engine is None:
        from metriq.database import engine

    store = PipelineStore(engine)
    catalog = catalog or TemplateCatalog()
    synthesizer = CodeSynthesizer(provider)
    registry = TransformerRegistry(store, synthesizer)
    ingestion = IngestionPipeline(store, fetcher or IntegrationFetcher(), registry, catalog)
    charts = ChartPipeline(store, synthesizer, catalog)
    return RefreshOrchestrator(store, ingestion, charts, catalog)
