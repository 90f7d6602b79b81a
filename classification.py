"""Rule-based categorization of recent income and expense transactions.

Rules are SQL-LIKE wildcard patterns (``%`` any run, ``_`` any single
character) matched case-insensitively against either the description or
the notes of a transaction. Rules are evaluated by priority, highest
first, and the first matching rule wins.

Every other character is literal: ``a.b`` matches only "a.b", never
"axb", so rules written as regular expressions must be rewritten.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from access import AuthContext
from audit import BATCH_RECORD_ID, record_audit
from errors import InvalidInputError
from models import ClassificationRule, RuleMatchField, Transaction, TransactionType
from periods import lookback_start


logger = logging.getLogger(__name__)

SAMPLE_LIMIT = 20
DEFAULT_LOOKBACK_DAYS = 30


def pattern_to_regex(pattern: str) -> re.Pattern[str]:
    parts: list[str] = []
    for char in pattern:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts), re.IGNORECASE)


@dataclass(frozen=True)
class CompiledRule:
    rule_id: str
    pattern: str
    regex: re.Pattern[str]
    match_field: RuleMatchField
    category_id: Optional[str]
    merchant_id: Optional[str]

    def target(self, txn: Transaction) -> Optional[str]:
        if self.match_field == RuleMatchField.notes:
            return txn.notes
        return txn.description

    def matches(self, txn: Transaction) -> bool:
        text = self.target(txn)
        if not text:
            return False
        return self.regex.search(text) is not None


@dataclass
class RuleMatch:
    transaction_id: str
    description: str
    rule_id: str
    pattern: str
    new_category_id: Optional[str]
    new_merchant_id: Optional[str]

    def as_dict(self) -> dict[str, Optional[str]]:
        return {
            "transaction_id": self.transaction_id,
            "description": self.description,
            "rule_id": self.rule_id,
            "pattern": self.pattern,
            "new_category_id": self.new_category_id,
            "new_merchant_id": self.new_merchant_id,
        }


@dataclass
class RuleRunResult:
    mode: str
    total_considered: int
    rules_evaluated: int
    matched: int
    applied: Optional[int] = None
    failed: int = 0
    samples: list[dict[str, Optional[str]]] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "mode": self.mode,
            "total_considered": self.total_considered,
            "rules_evaluated": self.rules_evaluated,
            "matched": self.matched,
        }
        if self.mode == "test":
            payload["samples"] = self.samples
        else:
            payload["applied"] = self.applied
            payload["failed"] = self.failed
        return payload


class ClassificationEngine:
    def __init__(self, session: Session, ctx: AuthContext) -> None:
        self.session = session
        self.ctx = ctx

    def active_rules(self) -> list[CompiledRule]:
        stmt = (
            select(ClassificationRule)
            .where(
                ClassificationRule.ledger_id == self.ctx.ledger_id,
                ClassificationRule.is_active.is_(True),
            )
            .order_by(
                ClassificationRule.priority.desc(),
                ClassificationRule.created_at.asc(),
                ClassificationRule.id.asc(),
            )
        )
        compiled: list[CompiledRule] = []
        for rule in self.session.scalars(stmt):
            compiled.append(
                CompiledRule(
                    rule_id=rule.id,
                    pattern=rule.match_pattern,
                    regex=pattern_to_regex(rule.match_pattern),
                    match_field=rule.match_field,
                    category_id=rule.category_id,
                    merchant_id=rule.merchant_id,
                )
            )
        return compiled

    def candidates(self, cutoff: date) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.ledger_id == self.ctx.ledger_id,
                Transaction.date >= cutoff,
                Transaction.type.in_([TransactionType.income, TransactionType.expense]),
            )
            .order_by(Transaction.date.asc(), Transaction.created_at.asc())
        )
        return list(self.session.scalars(stmt))

    @staticmethod
    def first_match(txn: Transaction, rules: list[CompiledRule]) -> Optional[RuleMatch]:
        for rule in rules:
            if rule.matches(txn):
                return RuleMatch(
                    transaction_id=txn.id,
                    description=txn.description or "",
                    rule_id=rule.rule_id,
                    pattern=rule.pattern,
                    new_category_id=rule.category_id,
                    new_merchant_id=rule.merchant_id,
                )
        return None

    def evaluate(
        self,
        mode: str,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        *,
        today: Optional[date] = None,
    ) -> RuleRunResult:
        if mode not in ("test", "apply"):
            raise InvalidInputError("mode must be 'test' or 'apply'")
        self.ctx.require(write=True)

        rules = self.active_rules()
        cutoff = lookback_start(lookback_days, today=today)
        txns = self.candidates(cutoff) if rules else []

        matches: list[tuple[Transaction, RuleMatch]] = []
        for txn in txns:
            match = self.first_match(txn, rules)
            if match:
                matches.append((txn, match))

        result = RuleRunResult(
            mode=mode,
            total_considered=len(txns),
            rules_evaluated=len(rules),
            matched=len(matches),
        )
        if mode == "test":
            result.samples = [m.as_dict() for _, m in matches[:SAMPLE_LIMIT]]
            return result

        applied = 0
        failed = 0
        for txn, match in matches:
            updates: dict[str, str] = {}
            if match.new_category_id:
                updates["category_id"] = match.new_category_id
            if match.new_merchant_id:
                updates["merchant_id"] = match.new_merchant_id
            if not updates:
                continue
            try:
                with self.session.begin_nested():
                    for column, value in updates.items():
                        setattr(txn, column, value)
                    self.session.flush()
            except SQLAlchemyError:
                failed += 1
                logger.warning(
                    f"rule_apply_failed: ledger={self.ctx.ledger_id} "
                    f"txn={match.transaction_id} rule={match.rule_id}",
                    exc_info=True,
                )
                continue
            applied += 1

        result.applied = applied
        result.failed = failed
        record_audit(
            self.session,
            ledger_id=self.ctx.ledger_id,
            table_name="transactions",
            record_id=BATCH_RECORD_ID,
            action="BULK_CLASSIFY",
            actor_id=self.ctx.user_id,
            after_data={
                "rules_evaluated": len(rules),
                "matched": len(matches),
                "applied": applied,
                "lookback_days": lookback_days,
            },
        )
        logger.info(
            f"rules_applied: ledger={self.ctx.ledger_id} matched={len(matches)} "
            f"applied={applied} failed={failed}"
        )
        return result

    def test_rules(self, lookback_days: int = DEFAULT_LOOKBACK_DAYS, **kwargs) -> RuleRunResult:
        return self.evaluate("test", lookback_days, **kwargs)

    def apply_rules(self, lookback_days: int = DEFAULT_LOOKBACK_DAYS, **kwargs) -> RuleRunResult:
        return self.evaluate("apply", lookback_days, **kwargs)
