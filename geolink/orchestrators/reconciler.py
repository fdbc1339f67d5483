"""
Receipt reconciliation for the GeoLink rule engine.

Drains the receipt outbox by retrying completion bookkeeping for
transactions that already succeeded on-chain. Nothing is resubmitted.
"""

from geolink.adapters.storage.sqlite_outbox import SQLiteOutbox
from geolink.observability import metrics
from geolink.observability.logging_setup import get_logger
from geolink.ports.lifecycle import LifecycleStorePort

log = get_logger("geolink.reconciler")


class ReceiptReconciler:
    """Outbox 영수증 재처리기"""

    def __init__(self, outbox: SQLiteOutbox, lifecycle: LifecycleStorePort, *, max_attempts: int = 10):
        """
        초기화합니다.

        Args:
            outbox: 영수증 Outbox
            lifecycle: 수명 주기 저장소
            max_attempts: 보류 전 최대 시도 횟수
        """
        self.outbox = outbox
        self.lifecycle = lifecycle
        self.max_attempts = max_attempts

    async def drain(self, limit: int = 100) -> int:
        """
        대기 중인 영수증의 완료 처리를 재시도합니다.

        Returns:
            완료 처리된 영수증 수
        """
        completed = 0
        for item in await self.outbox.list_ready(limit):
            try:
                await self.lifecycle.complete(item.rule_id, item.matched_public_key,
                                              item.update_id, item.transaction_hash)
            except Exception as e:
                metrics.reconcile_attempts.labels(result="failed").inc()
                await self.outbox.mark_attempt(item.id, str(e))
                log.warning(f"영수증 완료 처리 실패: id:{item.id} error:{e}", attempts=item.attempts + 1)
                if item.attempts + 1 >= self.max_attempts:
                    await self.outbox.park(item.id)
                continue

            await self.outbox.delete(item.id)
            metrics.reconcile_attempts.labels(result="ok").inc()
            completed += 1
            log.info("receipt reconciled", rule_id=item.rule_id, tx=item.transaction_hash)

        metrics.outbox_size.set(await self.outbox.get_count())
        metrics.outbox_parked.set(await self.outbox.get_count(parked=True))
        return completed
