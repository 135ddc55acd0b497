"""Зависимости, общие для краулера и обработчиков стадий."""
from dataclasses import dataclass

from openai import AsyncOpenAI
from supabase import Client

from src.ai.enrichment import EnrichmentService
from src.config import Settings
from src.fetching.page_fetcher import PageFetcher
from src.geo.geocoder import GeocodeResolver
from src.healing.selector_healer import SelectorHealer
from src.pipeline.circuit_breaker import CircuitBreaker
from src.pipeline.coordinator import StageCoordinator


@dataclass
class PipelineContext:
    db: Client
    settings: Settings
    breaker: CircuitBreaker
    coordinator: StageCoordinator
    fetcher: PageFetcher
    enrichment: EnrichmentService
    geocoder: GeocodeResolver
    healer: SelectorHealer | None = None
    openai_client: AsyncOpenAI | None = None
