"""
Storefront — UPI 支払いリンク生成

注文と店舗の受取アドレス (VPA) から upi:// のディープリンクを作る。
ネットワーク呼び出しも副作用もない純粋関数。

自由入力のフィールドはすべてパーセントエンコードする。
エンコード漏れがあると '&' や '=' で別のパラメータを差し込めてしまい、
実際のお金の支払い先・金額が改ざんされる。
"""

from decimal import Decimal, InvalidOperation
from urllib.parse import quote, urlencode

from .models import to_money

UPI_SCHEME = "upi://pay"


def format_amount(amount) -> str:
    """金額を小数 2 桁固定の文字列にする (例: 249.5 → '249.50')"""
    try:
        value = to_money(amount)
        if not value.is_finite():
            raise InvalidOperation
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {amount!r}") from None
    if value < 0:
        raise ValueError("Amount must not be negative")
    return f"{value:.2f}"


def build_payment_url(
    payee_address: str,
    payee_name: str,
    amount: Decimal | float | str,
    note: str,
    reference: str,
    currency: str = "INR",
) -> str:
    """
    支払いインテント URL を生成する。

        pa: 受取アドレス (VPA)
        pn: 受取人名
        am: 金額
        cu: 通貨
        tn: 取引メモ
        tr: 取引参照番号 (注文番号)
    """
    if not payee_address or not payee_address.strip():
        raise ValueError("Payee address is required")

    params = [
        ("pa", payee_address.strip()),
        ("pn", payee_name),
        ("am", format_amount(amount)),
        ("cu", currency),
        ("tn", note),
        ("tr", reference),
    ]
    return f"{UPI_SCHEME}?{urlencode(params, quote_via=quote, safe='')}"
