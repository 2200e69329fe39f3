"""
Storefront — 注文集約 (Order Aggregate)

注文の状態は直接書き換えず、イベントをリプレイして復元する。
apply_xxx メソッド: 各イベントを適用して状態を変更する

状態遷移 (操作できるのは店舗の seller のみ):

    pending ──▶ paid ──▶ confirmed ──▶ shipped ──▶ delivered
       │          │                  (追跡番号必須)
       └──────────┴──▶ cancelled

表にない遷移はすべて InvalidTransition。逆戻りはできない。
confirmed / shipped からのキャンセルは許可しない。
"""

from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel

from . import events
from .errors import InvalidTransition
from .models import OrderStatus

# (現在, 遷移先) → 記録するイベント
TRANSITIONS: dict[tuple[OrderStatus, OrderStatus], type[BaseModel]] = {
    (OrderStatus.PENDING, OrderStatus.PAID): events.OrderPaid,
    (OrderStatus.PENDING, OrderStatus.CANCELLED): events.OrderCancelled,
    (OrderStatus.PAID, OrderStatus.CONFIRMED): events.OrderConfirmed,
    (OrderStatus.PAID, OrderStatus.CANCELLED): events.OrderCancelled,
    (OrderStatus.CONFIRMED, OrderStatus.SHIPPED): events.OrderShipped,
    (OrderStatus.SHIPPED, OrderStatus.DELIVERED): events.OrderDelivered,
}

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})


def allowed_transitions(status: OrderStatus) -> list[OrderStatus]:
    """管理画面に出すボタンに相当する"""
    return [target for (current, target) in TRANSITIONS if current == status]


class OrderAggregate:
    """注文集約 — イベントから現在の状態を再構築する。"""

    def __init__(self) -> None:
        self.id: str | None = None
        self.store_id: str = ""
        self.user_id: str | None = None
        self.order_ref: str = ""
        self.total_amount: Decimal = Decimal("0")
        self.status: OrderStatus | None = None
        self.tracking_number: str | None = None
        self.version: int = 0

    # ── イベント適用メソッド ──────────────────────────

    def apply_order_placed(self, data: dict) -> None:
        self.id = data["order_id"]
        self.store_id = data["store_id"]
        self.user_id = data.get("user_id")
        self.order_ref = data["order_ref"]
        self.total_amount = Decimal(data["total_amount"])
        self.status = OrderStatus.PENDING

    def apply_order_paid(self, _data: dict) -> None:
        self.status = OrderStatus.PAID

    def apply_order_confirmed(self, _data: dict) -> None:
        self.status = OrderStatus.CONFIRMED

    def apply_order_shipped(self, data: dict) -> None:
        self.status = OrderStatus.SHIPPED
        self.tracking_number = data["tracking_number"]

    def apply_order_delivered(self, _data: dict) -> None:
        self.status = OrderStatus.DELIVERED

    def apply_order_cancelled(self, _data: dict) -> None:
        self.status = OrderStatus.CANCELLED

    # ── イベントリプレイ ─────────────────────────────

    def apply_event(self, event_type: str, event_data: dict) -> None:
        """イベントタイプに応じた apply メソッドを呼び出す。"""
        handler = {
            "OrderPlaced": self.apply_order_placed,
            "OrderPaid": self.apply_order_paid,
            "OrderConfirmed": self.apply_order_confirmed,
            "OrderShipped": self.apply_order_shipped,
            "OrderDelivered": self.apply_order_delivered,
            "OrderCancelled": self.apply_order_cancelled,
        }.get(event_type)
        if handler:
            handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "OrderAggregate":
        """イベント列から集約を再構築する。"""
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg

    # ── コマンドの検証 ───────────────────────────────

    def plan_transition(
        self,
        target: OrderStatus,
        tracking_number: str | None = None,
    ) -> BaseModel:
        """
        target への遷移を検証し、記録すべきイベントを返す。
        集約自体はまだ変更しない (保存に成功してから apply する)。
        """
        current = self.status.value if self.status else "unknown"
        event_cls = TRANSITIONS.get((self.status, target))
        if event_cls is None:
            raise InvalidTransition(current, target.value)

        now = datetime.now(timezone.utc)
        if event_cls is events.OrderShipped:
            tracking_number = (tracking_number or "").strip()
            if not tracking_number:
                raise InvalidTransition(
                    current, target.value,
                    "A tracking number is required to mark an order as shipped",
                )
            return event_cls(order_id=self.id, tracking_number=tracking_number, timestamp=now)
        return event_cls(order_id=self.id, timestamp=now)
