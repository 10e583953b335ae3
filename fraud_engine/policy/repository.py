"""
Rule Repository

Stores fraud rules under rules:{id} and serves the admin operations:
- Create, update and delete without redeploying
- YAML rule files loaded at startup
- Trigger counters and review-driven effectiveness per rule

Admin writes in this process are serialized by one lock; every write
is also a compare-and-set on the rule version so concurrent writers
in other processes cannot lose updates.
"""

import asyncio
import logging
from datetime import datetime, UTC
from pathlib import Path
from typing import Callable, Optional, Union
from uuid import uuid4

import yaml
from pydantic import ValidationError

from ..config import Settings
from ..errors import RuleNotFound, RuleValidationError
from ..metrics import metrics
from ..storage import KeyValueStore, cas_update, family_prefix, rule_key
from .rules import FraudRule, RuleCreate, RuleMetadata, RuleUpdate, default_rules

logger = logging.getLogger("fraud_engine.policy")


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _has_checks(rule: FraudRule) -> bool:
    """True if the rule's conditions enable at least one check."""
    values = rule.conditions.model_dump(exclude={"category", "disposable_domains"})
    return any(value not in (None, False, []) for value in values.values())


def validate_rule(rule: FraudRule) -> None:
    """
    Validate a rule beyond its schema.

    Raises:
        RuleValidationError: the rule could never trigger
    """
    if not _has_checks(rule):
        raise RuleValidationError(f"Rule '{rule.id}' enables no condition checks")


class RuleRepository:
    """
    Fraud rule storage and administration.

    Reads are unlocked; assessments take a snapshot with active_rules().
    """

    def __init__(self, store: KeyValueStore, settings: Settings):
        """
        Initialize repository.

        Args:
            store: Backing key-value store
            settings: Engine settings (CAS retry bound)
        """
        self.store = store
        self.settings = settings
        self._admin_lock = asyncio.Lock()

    # =========================================================================
    # Reads
    # =========================================================================

    async def list_rules(self, active_only: bool = False) -> list[FraudRule]:
        """All rules ordered by id."""
        rows = await self.store.scan(family_prefix("rules"))
        rules = sorted((FraudRule.model_validate(row) for row in rows), key=lambda r: r.id)
        if active_only:
            rules = [rule for rule in rules if rule.is_active]
        return rules

    async def active_rules(self) -> list[FraudRule]:
        """Snapshot of active rules for one assessment."""
        rules = await self.list_rules(active_only=True)
        metrics.active_rules.set(len(rules))
        return rules

    async def get_rule(self, rule_id: str) -> FraudRule:
        """
        Raises:
            RuleNotFound: no rule with this id
        """
        raw = await self.store.get(rule_key(rule_id))
        if raw is None:
            raise RuleNotFound(rule_id)
        return FraudRule.model_validate(raw)

    # =========================================================================
    # Admin Writes
    # =========================================================================

    async def create_rule(self, data: RuleCreate, actor: str = "system") -> FraudRule:
        """
        Create a rule; the id is generated when the request omits it.

        Raises:
            RuleValidationError: invalid rule or duplicate id
        """
        rule_id = data.id or f"rule_{uuid4().hex[:12]}"
        try:
            rule = FraudRule.model_validate({
                **data.model_dump(mode="json", exclude={"id"}),
                "id": rule_id,
                "metadata": RuleMetadata(created_by=actor).model_dump(mode="json"),
            })
        except ValidationError as e:
            raise RuleValidationError(str(e)) from e
        validate_rule(rule)

        async with self._admin_lock:
            created = await self.store.compare_and_set(
                rule_key(rule_id), rule.model_dump(mode="json"), None
            )
        if not created:
            raise RuleValidationError(f"Rule with id '{rule_id}' already exists")

        logger.info("Rule %s created by %s", rule_id, actor)
        return rule.model_copy(update={"version": 1})

    async def update_rule(self, rule_id: str, update: RuleUpdate, actor: str = "system") -> FraudRule:
        """
        Apply a partial update.

        Raises:
            RuleNotFound: no rule with this id
            RuleValidationError: the updated rule is invalid
            ConcurrentModification: write kept conflicting
        """
        dumped = update.model_dump(mode="json")
        changes = {
            field: dumped[field]
            for field in update.model_fields_set
            if dumped[field] is not None
        }
        now = _utc_now().isoformat()

        def apply(current: dict) -> dict:
            merged = {**current, **changes}
            if "conditions" in changes:
                merged["category"] = changes["conditions"]["category"]
            merged["metadata"] = {**current["metadata"], "updated_at": now, "updated_by": actor}
            try:
                rule = FraudRule.model_validate(merged)
            except ValidationError as e:
                raise RuleValidationError(str(e)) from e
            validate_rule(rule)
            return rule.model_dump(mode="json")

        async with self._admin_lock:
            rule = await self._write(rule_id, apply)

        logger.info("Rule %s updated by %s (%s)", rule_id, actor, ", ".join(sorted(changes)) or "no changes")
        return rule

    async def delete_rule(self, rule_id: str) -> None:
        """
        Raises:
            RuleNotFound: no rule with this id
        """
        async with self._admin_lock:
            if not await self.store.delete(rule_key(rule_id)):
                raise RuleNotFound(rule_id)
        logger.info("Rule %s deleted", rule_id)

    # =========================================================================
    # Counters
    # =========================================================================

    async def record_trigger(self, rule_id: str, at: Optional[datetime] = None) -> FraudRule:
        """Bump trigger_count and last_triggered after an assessment."""
        at = at or _utc_now()

        def apply(current: dict) -> dict:
            rule = FraudRule.model_validate(current)
            rule.metadata.trigger_count += 1
            rule.metadata.last_triggered = at
            return rule.model_dump(mode="json")

        rule = await self._write(rule_id, apply)
        metrics.rule_triggers.labels(rule_id=rule_id).inc()
        return rule

    async def record_review(self, rule_id: str, was_true_positive: bool) -> FraudRule:
        """Count a reviewed assessment this rule triggered on."""

        def apply(current: dict) -> dict:
            rule = FraudRule.model_validate(current)
            rule.metadata.record_review(was_true_positive)
            return rule.model_dump(mode="json")

        return await self._write(rule_id, apply)

    # =========================================================================
    # Loading
    # =========================================================================

    async def load_defaults(self) -> int:
        """Store the default rules that are not stored yet; returns how many were added."""
        added = 0
        async with self._admin_lock:
            for rule in default_rules():
                if await self.store.compare_and_set(rule_key(rule.id), rule.model_dump(mode="json"), None):
                    added += 1
        if added:
            logger.info("Loaded %d default rules", added)
        return added

    async def load_from_yaml(self, path: Union[str, Path]) -> list[FraudRule]:
        """
        Load rules from a YAML file and store them.

        The file holds a list of rules, either at the top level or under
        a "rules" key. Rules already stored keep their metadata counters.

        Raises:
            RuleValidationError: the file or one of its rules is invalid
        """
        path = Path(path)
        try:
            with open(path) as f:
                config = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise RuleValidationError(f"Cannot read rules file {path}: {e}") from e

        entries = config.get("rules") if isinstance(config, dict) else config
        if not isinstance(entries, list):
            raise RuleValidationError(f"Rules file {path} does not contain a list of rules")

        rules = []
        for entry in entries:
            try:
                rule = FraudRule.model_validate(entry)
            except ValidationError as e:
                raise RuleValidationError(f"Invalid rule in {path}: {e}") from e
            validate_rule(rule)
            rules.append(rule)

        async with self._admin_lock:
            for rule in rules:
                await self._upsert(rule)

        logger.info("Loaded %d rules from %s", len(rules), path)
        return rules

    # =========================================================================
    # Internals
    # =========================================================================

    async def _upsert(self, rule: FraudRule) -> None:
        def mutate(current: Optional[dict]) -> dict:
            content = rule.model_dump(mode="json", exclude={"metadata", "version"})
            if current is None:
                content["metadata"] = RuleMetadata().model_dump(mode="json")
            else:
                content["metadata"] = current["metadata"]
            return content

        await cas_update(self.store, rule_key(rule.id), mutate, self.settings.cas_max_retries, "rules")

    async def _write(self, rule_id: str, apply: Callable[[dict], dict]) -> FraudRule:
        def mutate(current: Optional[dict]) -> dict:
            if current is None:
                raise RuleNotFound(rule_id)
            return apply(current)

        value, _ = await cas_update(
            self.store, rule_key(rule_id), mutate, self.settings.cas_max_retries, "rules"
        )
        return FraudRule.model_validate(value)
