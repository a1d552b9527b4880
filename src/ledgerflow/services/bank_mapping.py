from dataclasses import dataclass

from ledgerflow.errors import NotFoundError, ServiceUnavailableError, ValidationError
from ledgerflow.integration.llm import LlmProvider
from ledgerflow.logger import get_logger
from ledgerflow.models import BankCategoryMapping, Category, MappingSource, utcnow
from ledgerflow.storage.repositories import Store

logger = get_logger(__name__)

DEFAULT_PROVIDER = "akahu"
LEARNED_MAPPING_CONFIDENCE = 0.7


def normalize_bank_category(name: str) -> str:
    return name.strip().lower()


@dataclass
class MappingResolution:
    bank_category_name: str
    category_id: int
    confidence: float
    was_exact_match: bool = False
    is_excluded: bool = False
    mapping_id: int | None = None
    is_ai_mapped: bool = False
    reasoning: str | None = None

    @property
    def is_usable(self) -> bool:
        """Excluded or unmapped resolutions never produce output."""
        return not self.is_excluded and self.category_id > 0


class BankCategoryMappingService:
    def __init__(self, store: Store, llm: LlmProvider | None = None) -> None:
        self.store = store
        self.llm = llm

    def _categories(self, user_id: str) -> list[Category]:
        return self.store.categories.find(lambda c: c.user_id == user_id and not c.is_deleted)

    def _from_mapping(self, name: str, mapping: BankCategoryMapping) -> MappingResolution:
        return MappingResolution(
            bank_category_name=name,
            category_id=mapping.category_id,
            confidence=mapping.confidence,
            is_excluded=mapping.is_excluded,
            mapping_id=mapping.id,
            is_ai_mapped=mapping.source == MappingSource.AI,
            reasoning=f"Stored {mapping.source} mapping",
        )

    def lookup(self, user_id: str, bank_category: str, provider: str = DEFAULT_PROVIDER) -> MappingResolution | None:
        """Resolve without creating anything: exact category name, then stored mapping."""
        normalized = normalize_bank_category(bank_category)
        if not normalized:
            return None
        for category in self._categories(user_id):
            if category.name.strip().lower() == normalized:
                return MappingResolution(
                    bank_category_name=bank_category,
                    category_id=category.id or 0,
                    confidence=1.0,
                    was_exact_match=True,
                    reasoning="Bank category matches category name",
                )
        mapping = self.store.mappings.find_active(user_id, normalized, provider)
        if mapping is not None:
            return self._from_mapping(bank_category, mapping)
        return None

    async def resolve_and_create_mappings(
        self,
        user_id: str,
        bank_categories: list[str],
        provider: str = DEFAULT_PROVIDER,
    ) -> dict[str, MappingResolution]:
        """
        Resolve each bank category string for the user.

        Exact category-name matches and stored mappings win; whatever is left
        goes to the LLM in one batch and successful mappings are stored. If the
        LLM is unavailable the leftovers come back as unmapped placeholders.
        """
        results: dict[str, MappingResolution] = {}
        unresolved: list[str] = []
        seen: set[str] = set()

        for name in bank_categories:
            normalized = normalize_bank_category(name or "")
            if not normalized or normalized in seen:
                continue
            seen.add(normalized)
            resolution = self.lookup(user_id, name, provider)
            if resolution is None:
                unresolved.append(name)
            else:
                results[name] = resolution

        if unresolved:
            results.update(await self._resolve_with_ai(user_id, unresolved, provider))

        logger.debug(
            "[BANK-MAP] Resolved %s bank categories for %s (%s via AI).",
            len(results),
            user_id,
            len(unresolved),
        )
        return results

    async def _resolve_with_ai(
        self,
        user_id: str,
        names: list[str],
        provider: str,
    ) -> dict[str, MappingResolution]:
        placeholders = {
            name: MappingResolution(bank_category_name=name, category_id=0, confidence=0.0,
                                    reasoning="No mapping available")
            for name in names
        }
        if self.llm is None:
            return placeholders

        categories = self._categories(user_id)
        valid_ids = {c.id for c in categories}
        try:
            suggestions = await self.llm.map_bank_categories(names, categories)
        except ServiceUnavailableError as e:
            logger.warning("[BANK-MAP] AI mapping failed for %s categories: %s", len(names), e)
            return placeholders

        by_name = {normalize_bank_category(s.bank_category): s for s in suggestions}
        results = dict(placeholders)
        for name in names:
            suggestion = by_name.get(normalize_bank_category(name))
            if suggestion is None:
                continue
            if suggestion.action != "MAP" or suggestion.category_id not in valid_ids:
                results[name].reasoning = (
                    f"AI suggests a new category '{suggestion.suggested_name}'"
                    if suggestion.suggested_name
                    else suggestion.reasoning
                )
                continue
            confidence = max(0.0, min(1.0, suggestion.confidence))
            mapping = self.store.mappings.add(BankCategoryMapping(
                user_id=user_id,
                provider=provider,
                bank_category_name=name,
                normalized_name=normalize_bank_category(name),
                category_id=suggestion.category_id,
                confidence=confidence,
                source=MappingSource.AI,
            ))
            logger.info(
                "[BANK-MAP] AI mapped '%s' to category %s (confidence %.2f).",
                name,
                mapping.category_id,
                confidence,
            )
            results[name] = MappingResolution(
                bank_category_name=name,
                category_id=mapping.category_id,
                confidence=confidence,
                mapping_id=mapping.id,
                is_ai_mapped=True,
                reasoning=suggestion.reasoning,
            )
        return results

    def list_mappings(self, user_id: str, provider: str | None = None) -> list[BankCategoryMapping]:
        mappings = self.store.mappings.find(
            lambda m: m.user_id == user_id
            and m.is_active
            and (provider is None or m.provider.lower() == provider.lower())
        )
        return sorted(mappings, key=lambda m: m.normalized_name)

    def get_mapping(self, user_id: str, mapping_id: int) -> BankCategoryMapping:
        mapping = self.store.mappings.get(mapping_id)
        if mapping is None or mapping.user_id != user_id or not mapping.is_active:
            raise NotFoundError.for_entity("Bank category mapping", mapping_id)
        return mapping

    def upsert(
        self,
        user_id: str,
        bank_category: str,
        category_id: int,
        provider: str = DEFAULT_PROVIDER,
        is_excluded: bool = False,
    ) -> BankCategoryMapping:
        normalized = normalize_bank_category(bank_category)
        if not normalized:
            raise ValidationError("Bank category name is required")
        category = self.store.categories.get(category_id)
        if category is None or category.user_id != user_id or category.is_deleted:
            raise NotFoundError.for_entity("Category", category_id)

        mapping = self.store.mappings.find_active(user_id, normalized, provider)
        if mapping is None:
            mapping = self.store.mappings.add(BankCategoryMapping(
                user_id=user_id,
                provider=provider,
                bank_category_name=bank_category.strip(),
                normalized_name=normalized,
                category_id=category_id,
            ))
        mapping.category_id = category_id
        mapping.confidence = 1.0
        mapping.source = MappingSource.USER
        mapping.is_excluded = is_excluded
        return self.store.mappings.update(mapping)

    def set_excluded(self, user_id: str, mapping_id: int, is_excluded: bool) -> BankCategoryMapping:
        mapping = self.get_mapping(user_id, mapping_id)
        mapping.is_excluded = is_excluded
        logger.info("[BANK-MAP] Mapping %s exclusion set to %s.", mapping_id, is_excluded)
        return self.store.mappings.update(mapping)

    def delete(self, user_id: str, mapping_id: int) -> None:
        mapping = self.get_mapping(user_id, mapping_id)
        mapping.is_active = False
        self.store.mappings.update(mapping)

    def record_application(self, mapping_id: int | None) -> None:
        if mapping_id is None:
            return
        mapping = self.store.mappings.get(mapping_id)
        if mapping is None:
            return
        mapping.application_count += 1
        mapping.last_applied_at = utcnow()
        self.store.mappings.update(mapping)

    def record_override(self, user_id: str, mapping_id: int, new_category_id: int) -> BankCategoryMapping | None:
        """A user re-categorized a mapped transaction: learn the correction."""
        mapping = self.store.mappings.get(mapping_id)
        if mapping is None or mapping.user_id != user_id:
            return None
        mapping.override_count += 1
        self.store.mappings.update(mapping)
        if new_category_id == mapping.category_id or mapping.source == MappingSource.USER:
            return mapping

        mapping.is_active = False
        self.store.mappings.update(mapping)
        learned = self.store.mappings.add(BankCategoryMapping(
            user_id=user_id,
            provider=mapping.provider,
            bank_category_name=mapping.bank_category_name,
            normalized_name=mapping.normalized_name,
            category_id=new_category_id,
            confidence=LEARNED_MAPPING_CONFIDENCE,
            source=MappingSource.LEARNED,
            is_excluded=mapping.is_excluded,
        ))
        logger.info(
            "[BANK-MAP] Learned '%s' -> category %s after user override.",
            mapping.bank_category_name,
            new_category_id,
        )
        return learned
