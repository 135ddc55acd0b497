"""Лечение CSS-селекторов источника через OpenAI с валидацией и версионированием.

Предложение модели применяется только если селекторы реально находят
карточки в текущей разметке и confidence не ниже порога. Иначе —
запись в sg_ai_repair_log с applied=False и ручная проверка.
"""
import json
from typing import Any

from loguru import logger
from openai import APIError, AsyncOpenAI
from postgrest.exceptions import APIError as PostgrestAPIError
from pydantic import BaseModel, ValidationError
from supabase import Client

from src.ai.prompt import build_healer_messages
from src.ai.schemas import SelectorProposal
from src.ai.structured import json_schema_format, parse_structured
from src.database import SOURCES_TABLE, run_in_thread, sanitize_error, utcnow
from src.healing.structure import (
    SelectorValidation,
    summarize_structure,
    truncate_html,
    validate_selectors,
)
from src.models.source import SelectorConfig, Source

SELECTOR_CONFIGS_TABLE = "sg_selector_configs"
REPAIR_LOG_TABLE = "sg_ai_repair_log"
_VERSION_INSERT_ATTEMPTS = 3


class HealingResult(BaseModel):
    success: bool
    healed: bool = False
    needs_review: bool = False
    confidence: float = 0.0
    reasoning: str = ""
    old_config: SelectorConfig | None = None
    new_config: SelectorConfig | None = None
    old_event_count: int = 0
    new_event_count: int = 0
    version: int | None = None


def compute_confidence(validation: SelectorValidation, expected_count: int | None) -> float:
    """0.5 база + 0.2 за найденные карточки + близость к ожидаемому числу + обязательные поля."""
    confidence = 0.5
    if validation.card_count > 0:
        confidence += 0.2
        if expected_count and expected_count > 0:
            ratio = min(validation.card_count, expected_count) / max(validation.card_count, expected_count)
            confidence += ratio * 0.15
    confidence += validation.required_valid_fraction * 0.15
    return min(confidence, 1.0)


class SelectorHealer:
    def __init__(
        self,
        db: Client,
        openai_client: AsyncOpenAI | None,
        model: str = "gpt-4o-mini",
        confidence_threshold: float = 0.7,
    ) -> None:
        self.db = db
        self.client = openai_client
        self.model = model
        self.confidence_threshold = confidence_threshold

    async def heal(
        self,
        source: Source,
        html: str,
        previous_titles: list[str] | None = None,
    ) -> HealingResult:
        """Проверить текущие селекторы и, если они сломаны, получить и применить новые."""
        current = source.extraction_config
        old_count = 0
        if current is not None:
            validation = validate_selectors(html, current)
            old_count = validation.card_count
            if old_count > 0:
                return HealingResult(
                    success=True, healed=False, confidence=1.0,
                    reasoning="current selectors still match",
                    old_config=current, old_event_count=old_count,
                )

        if self.client is None:
            return HealingResult(
                success=False, needs_review=True,
                reasoning="AI healing unavailable (no OpenAI key)", old_config=current,
            )

        try:
            proposal = await self._propose(source, current, html, previous_titles)
        except (APIError, ValidationError, json.JSONDecodeError, ValueError) as e:
            reason = f"AI proposal failed: {sanitize_error(str(e))}"
            logger.warning(f"[healer] Source {source.id}: {reason}")
            await self._audit(source, html, current, None, reason, 0.0, old_count, 0, False, False)
            return HealingResult(success=False, needs_review=True, reasoning=reason, old_config=current)

        config = proposal.to_config()
        validation = validate_selectors(html, config)
        confidence = compute_confidence(validation, source.expected_event_count)
        reasoning = proposal.reasoning

        if not validation.valid or confidence < self.confidence_threshold:
            logger.warning(
                f"[healer] Source {source.id}: proposal rejected "
                f"(cards={validation.card_count}, invalid={validation.invalid_fields}, "
                f"confidence={confidence:.2f}), manual review"
            )
            await self._audit(
                source, html, current, config, reasoning, confidence,
                old_count, validation.card_count, validation.valid, False,
            )
            return HealingResult(
                success=False, needs_review=True, confidence=confidence,
                reasoning=f"Low confidence ({confidence:.0%}) or invalid selectors: {reasoning}",
                old_config=current, new_config=config,
                old_event_count=old_count, new_event_count=validation.card_count,
            )

        version = await self._save_version(source, config)
        await self._audit(
            source, html, current, config, reasoning, confidence,
            old_count, validation.card_count, True, True,
        )
        logger.info(
            f"[healer] Source {source.id}: healed → v{version} "
            f"({validation.card_count} cards, confidence={confidence:.2f})"
        )
        return HealingResult(
            success=True, healed=True, confidence=confidence, reasoning=reasoning,
            old_config=current, new_config=config,
            old_event_count=old_count, new_event_count=validation.card_count,
            version=version,
        )

    async def _propose(
        self,
        source: Source,
        current: SelectorConfig | None,
        html: str,
        previous_titles: list[str] | None,
    ) -> SelectorProposal:
        messages = build_healer_messages(
            source.url,
            current.to_db() if current else None,
            summarize_structure(html),
            truncate_html(html),
            previous_titles,
        )
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            response_format=json_schema_format("selector_healing", SelectorProposal),
            temperature=0.1,
            max_tokens=1500,
        )
        message = response.choices[0].message if response.choices else None
        if message is None or message.refusal or not message.content:
            raise ValueError("empty or refused healer response")
        return parse_structured(message.content, SelectorProposal)

    async def _latest_version(self, source_id: str) -> int:
        result = await run_in_thread(
            self.db.table(SELECTOR_CONFIGS_TABLE)
            .select("version")
            .eq("source_id", source_id)
            .order("version", desc=True)
            .limit(1)
            .execute
        )
        return result.data[0]["version"] if result.data else 0

    async def _save_version(self, source: Source, config: SelectorConfig) -> int:
        """
        Новая версия → единственная активная. Уникальный индекс (source_id, version)
        разводит конкурентных лекарей — проигравший берёт следующий номер.
        """
        if await self._latest_version(source.id) == 0 and source.extraction_config is not None:
            await self._seed_version(source)

        row_id: str | None = None
        version = 0
        for _ in range(_VERSION_INSERT_ATTEMPTS):
            version = max(await self._latest_version(source.id), source.config_version) + 1
            try:
                result = await run_in_thread(
                    self.db.table(SELECTOR_CONFIGS_TABLE).insert({
                        "source_id": source.id,
                        "version": version,
                        "config": config.to_db(),
                        "is_active": False,
                        "created_by": "ai_healer",
                    }).execute
                )
            except PostgrestAPIError as e:
                if e.code == "23505":
                    continue
                raise
            row_id = result.data[0]["id"]
            break
        if row_id is None:
            raise RuntimeError(f"Could not allocate selector config version for {source.id}")

        await self._activate(source.id, row_id, version, config)
        return version

    async def _seed_version(self, source: Source) -> None:
        """Сохранить ручной конфиг источника как первую версию, чтобы к нему был откат."""
        try:
            await run_in_thread(
                self.db.table(SELECTOR_CONFIGS_TABLE).insert({
                    "source_id": source.id,
                    "version": max(source.config_version, 1),
                    "config": source.extraction_config.to_db(),
                    "is_active": True,
                    "created_by": "manual",
                }).execute
            )
        except PostgrestAPIError as e:
            if e.code != "23505":
                raise

    async def _activate(self, source_id: str, row_id: str, version: int, config: SelectorConfig) -> None:
        await run_in_thread(
            self.db.table(SELECTOR_CONFIGS_TABLE)
            .update({"is_active": False})
            .eq("source_id", source_id)
            .eq("is_active", True)
            .execute
        )
        await run_in_thread(
            self.db.table(SELECTOR_CONFIGS_TABLE)
            .update({"is_active": True})
            .eq("id", row_id)
            .execute
        )
        await run_in_thread(
            self.db.table(SOURCES_TABLE)
            .update({
                "extraction_config": config.to_db(),
                "config_version": version,
                "consecutive_failures": 0,
            })
            .eq("id", source_id)
            .execute
        )

    async def rollback(self, source_id: str) -> SelectorConfig | None:
        """Вернуть предыдущую версию селекторов. None — откатываться некуда."""
        active = await run_in_thread(
            self.db.table(SELECTOR_CONFIGS_TABLE)
            .select("*")
            .eq("source_id", source_id)
            .eq("is_active", True)
            .limit(1)
            .execute
        )
        if not active.data:
            return None
        current = active.data[0]
        previous = await run_in_thread(
            self.db.table(SELECTOR_CONFIGS_TABLE)
            .select("*")
            .eq("source_id", source_id)
            .lt("version", current["version"])
            .order("version", desc=True)
            .limit(1)
            .execute
        )
        if not previous.data:
            return None
        row = previous.data[0]
        config = SelectorConfig.model_validate(row["config"])
        await self._activate(source_id, row["id"], row["version"], config)

        await self._insert_audit({
            "source_id": source_id,
            "trigger_reason": "rollback",
            "old_config": current["config"],
            "new_config": row["config"],
            "validation_passed": True,
            "applied": True,
            "applied_at": utcnow().isoformat(),
            "rollback_available": row["version"] > 1,
        })
        logger.info(f"[healer] Source {source_id}: rolled back v{current['version']} → v{row['version']}")
        return config

    async def _audit(
        self,
        source: Source,
        html: str,
        old_config: SelectorConfig | None,
        new_config: SelectorConfig | None,
        reasoning: str,
        confidence: float,
        old_count: int,
        new_count: int,
        validation_passed: bool,
        applied: bool,
    ) -> None:
        entry: dict[str, Any] = {
            "source_id": source.id,
            "trigger_reason": "zero_yield",
            "raw_html_sample": html[:5000].replace("\x00", ""),
            "ai_diagnosis": reasoning,
            "old_config": old_config.to_db() if old_config else None,
            "new_config": new_config.to_db() if new_config else None,
            "old_event_count": old_count,
            "new_event_count": new_count,
            "confidence": round(confidence, 3),
            "validation_passed": validation_passed,
            "applied": applied,
            "applied_at": utcnow().isoformat() if applied else None,
            "rollback_available": applied and old_config is not None,
        }
        await self._insert_audit(entry)

    async def _insert_audit(self, entry: dict[str, Any]) -> None:
        try:
            await run_in_thread(self.db.table(REPAIR_LOG_TABLE).insert(entry).execute)
        except Exception as e:
            logger.error(f"[healer] Failed to write repair log for {entry.get('source_id')}: {e}")
