"""
A/B Test Controller
Sticky per-execution variant assignment for email nodes, atomic counters,
and winner selection once the sample size is reached.
"""
import hashlib
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from sendflow import db
from sendflow.exceptions import ConfigError, NotFoundError
from sendflow.models.ab_tests import WorkflowNodeABTest, ABTestVariant, WINNER_METRICS
from sendflow.utils import utcnow

logger = logging.getLogger(__name__)

PERCENTAGE_TOLERANCE = 0.01
COUNTER_EVENTS = ('sent', 'delivered', 'opened', 'clicked')


@dataclass(frozen=True)
class WinnerDecision:
    winner: Optional[str]
    confidence: float
    margin: float


def stable_bucket(*parts: str) -> float:
    """Map the parts onto [0, 100) deterministically"""
    digest = hashlib.sha256(':'.join(str(p) for p in parts).encode()).hexdigest()
    return (int(digest[:8], 16) % 10000) / 100.0


def choose_weighted(keys: Sequence[str], percentages: Sequence[float], bucket: float) -> str:
    """Pick a key by cumulative normalized percentage"""
    total = sum(max(p, 0) for p in percentages)
    if total <= 0:
        return keys[0]
    cumulative = 0.0
    for key, percentage in zip(keys, percentages):
        cumulative += max(percentage, 0) / total * 100
        if bucket < cumulative:
            return key
    return keys[-1]


def calculate_winner(metrics: Dict[str, float], threshold: float) -> WinnerDecision:
    """Best metric wins unless its lead over the runner-up is below ``threshold``"""
    if not metrics:
        return WinnerDecision(None, 0.0, 0.0)
    ranked = sorted(metrics.items(), key=lambda item: item[1], reverse=True)
    best_key, best = ranked[0]
    runner_up = ranked[1][1] if len(ranked) > 1 else 0.0
    margin = best - runner_up
    confidence = min(95.0, max(50.0, 50.0 + margin * 5))
    if threshold and margin < threshold:
        return WinnerDecision(None, confidence, margin)
    return WinnerDecision(best_key, confidence, margin)


class ABTestController:
    def __init__(self, clock=None):
        self.clock = clock or utcnow

    # ==================== CONFIG ====================

    def get_test(self, workflow_id: str, node_id: str) -> Optional[WorkflowNodeABTest]:
        return WorkflowNodeABTest.query.filter_by(workflow_id=workflow_id, node_id=node_id).first()

    def _require_test(self, workflow_id, node_id) -> WorkflowNodeABTest:
        test = self.get_test(workflow_id, node_id)
        if not test:
            raise NotFoundError(f"No A/B test on node {node_id}")
        return test

    @staticmethod
    def _validate_config(config: Dict) -> List[Dict]:
        variants = config.get('variants') or []
        if len(variants) < 2:
            raise ConfigError("An A/B test needs at least two variants")

        keys = [str(v.get('id') or '') for v in variants]
        if any(not k for k in keys) or len(set(keys)) != len(keys):
            raise ConfigError("Variant ids must be present and unique")

        try:
            percentages = [float(v.get('percentage', 0)) for v in variants]
        except (TypeError, ValueError):
            raise ConfigError("Variant percentages must be numbers")
        if any(p < 0 for p in percentages):
            raise ConfigError("Variant percentages cannot be negative")
        if config.get('isEnabled', True) and abs(sum(percentages) - 100) > PERCENTAGE_TOLERANCE:
            raise ConfigError("Variant percentages must sum to 100%")

        if config.get('winnerMetric', 'open_rate') not in WINNER_METRICS:
            raise ConfigError(f"Unknown winner metric: {config.get('winnerMetric')}")
        if int(config.get('sampleSize', 100)) < 1:
            raise ConfigError("Sample size must be at least 1")
        if float(config.get('winnerThreshold') or 0) < 0:
            raise ConfigError("Winner threshold cannot be negative")
        return variants

    def save_ab_test(self, workflow_id: str, node_id: str, config: Dict) -> WorkflowNodeABTest:
        """Create or update the test on an email node, keeping counters of kept variants"""
        variants = self._validate_config(config)

        test = self.get_test(workflow_id, node_id)
        if test is None:
            test = WorkflowNodeABTest(workflow_id=workflow_id, node_id=node_id)
            db.session.add(test)

        test.is_enabled = bool(config.get('isEnabled', True))
        test.sample_size = int(config.get('sampleSize', 100))
        test.winner_metric = config.get('winnerMetric', 'open_rate')
        test.auto_select_winner = bool(config.get('autoSelectWinner', True))
        test.winner_threshold = float(config.get('winnerThreshold') or 0)

        existing = {v.variant_key: v for v in test.variants}
        kept = []
        for position, raw in enumerate(variants):
            key = str(raw['id'])
            variant = existing.pop(key, None) or ABTestVariant(variant_key=key)
            variant.name = raw.get('name') or f"Variant {key}"
            variant.subject = raw.get('subject')
            variant.body = raw.get('body')
            variant.percentage = float(raw.get('percentage', 0))
            variant.position = position
            kept.append(variant)
        test.variants = kept

        if test.winner_variant_id and test.winner_variant_id not in {v.variant_key for v in kept}:
            test.winner_variant_id = None
            test.status = 'active'
            test.completed_at = None

        db.session.commit()
        logger.info(f"Saved A/B test on node {node_id} with {len(kept)} variants")
        return test

    def delete_ab_test(self, workflow_id: str, node_id: str):
        test = self._require_test(workflow_id, node_id)
        db.session.delete(test)
        db.session.commit()

    # ==================== ASSIGNMENT ====================

    def assign_variant(self, data: Dict, execution_id: str, node_id: str,
                       test: WorkflowNodeABTest) -> Optional[ABTestVariant]:
        """Variant for this execution at this node; sticky once recorded in ``data``"""
        variants = list(test.variants)
        if not variants:
            return None
        by_key = {v.variant_key: v for v in variants}

        assignments = data.setdefault('ab_variants', {})
        assigned = assignments.get(node_id)
        if assigned in by_key:
            return by_key[assigned]

        if test.winner_variant_id in by_key:
            key = test.winner_variant_id
        else:
            key = choose_weighted(
                [v.variant_key for v in variants],
                [v.percentage for v in variants],
                stable_bucket(execution_id, node_id),
            )

        assignments[node_id] = key
        return by_key[key]

    # ==================== COUNTERS ====================

    def record(self, test_id: str, variant_key: str, event: str = 'sent') -> Optional[str]:
        """Atomically bump one counter, then check for a winner"""
        if event not in COUNTER_EVENTS:
            raise ValueError(f"Unknown A/B event: {event}")
        column = getattr(ABTestVariant, event)
        updated = ABTestVariant.query.filter_by(test_id=test_id, variant_key=variant_key).update(
            {column: column + 1}, synchronize_session=False)
        if not updated:
            logger.warning(f"A/B variant {variant_key} not found on test {test_id}")
            return None
        return self.maybe_select_winner(test_id)

    def maybe_select_winner(self, test_id: str) -> Optional[str]:
        test = db.session.get(WorkflowNodeABTest, test_id)
        if not test or not test.auto_select_winner or test.winner_variant_id:
            return test.winner_variant_id if test else None

        variants = ABTestVariant.query.filter_by(test_id=test_id).populate_existing().all()
        total_sent = sum(v.sent or 0 for v in variants)
        if total_sent < (test.sample_size or 0):
            return None

        decision = calculate_winner(
            {v.variant_key: v.metric(test.winner_metric) for v in variants},
            test.winner_threshold or 0,
        )
        if decision.winner is None:
            logger.info(f"A/B test {test_id}: margin {decision.margin:.1f} below threshold, deferring")
            return None

        return self._fix_winner(test_id, decision.winner, decision.confidence)

    def _fix_winner(self, test_id: str, variant_key: str, confidence: Optional[float]) -> str:
        now = self.clock()
        # Only the first writer fixes the winner
        WorkflowNodeABTest.query.filter(
            WorkflowNodeABTest.id == test_id,
            WorkflowNodeABTest.winner_variant_id.is_(None),
        ).update({
            'winner_variant_id': variant_key,
            'confidence': confidence,
            'status': 'completed',
            'completed_at': now,
        }, synchronize_session=False)
        test = db.session.get(WorkflowNodeABTest, test_id, populate_existing=True)
        logger.info(f"A/B test {test_id} winner: {test.winner_variant_id}")
        return test.winner_variant_id

    # ==================== OPERATOR ====================

    def select_winner(self, workflow_id: str, node_id: str, variant_key: str) -> WorkflowNodeABTest:
        test = self._require_test(workflow_id, node_id)
        if variant_key not in {v.variant_key for v in test.variants}:
            raise ConfigError(f"Variant {variant_key} is not part of this test")
        test.winner_variant_id = variant_key
        test.confidence = None
        test.status = 'completed'
        test.completed_at = self.clock()
        db.session.commit()
        return test

    def reset_stats(self, workflow_id: str, node_id: str) -> WorkflowNodeABTest:
        """Clear counters and winner; variant definitions stay"""
        test = self._require_test(workflow_id, node_id)
        for variant in test.variants:
            variant.sent = 0
            variant.delivered = 0
            variant.opened = 0
            variant.clicked = 0
        test.winner_variant_id = None
        test.confidence = None
        test.status = 'active'
        test.completed_at = None
        db.session.commit()
        return test

    def get_variant_stats(self, workflow_id: str, node_id: str) -> Dict:
        test = self._require_test(workflow_id, node_id)
        variants = [v.to_dict() for v in test.variants]
        total_sent = sum(v['stats']['sent'] for v in variants)
        return {
            'test': test.to_dict(),
            'total_sent': total_sent,
            'progress': min(100.0, total_sent / test.sample_size * 100) if test.sample_size else 100.0,
            'variants': variants,
        }


_ab_test_controller = None


def get_ab_test_controller() -> ABTestController:
    global _ab_test_controller
    if _ab_test_controller is None:
        _ab_test_controller = ABTestController()
    return _ab_test_controller
