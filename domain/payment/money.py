"""
金额与币种工具 - 十进制金额与整数最小货币单位之间的转换

本服务存储及与网关交换的金额均为整数最小货币单位（USD 为美分，JPY 为日元），换算按四舍五入。
"""
from __future__ import annotations

import math
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from domain.common.exceptions import DomainValidationException


# 网关侧没有小数单位的币种
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})

THREE_DECIMAL_CURRENCIES = frozenset({"BHD", "JOD", "KWD", "OMR", "TND"})

AmountLike = Union[Decimal, int, str, float]


def normalize_currency(code: str) -> str:
    """校验 ISO-4217 三字母币种代码，返回网关使用的小写形式"""
    value = (code or "").strip()
    if len(value) != 3 or not value.isalpha():
        raise DomainValidationException(
            f"无效的货币代码: {code}",
            field="currency",
        )
    return value.lower()


def currency_exponent(currency: str) -> int:
    upper = normalize_currency(currency).upper()
    if upper in ZERO_DECIMAL_CURRENCIES:
        return 0
    if upper in THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def _to_decimal(amount: AmountLike, field: str) -> Decimal:
    if isinstance(amount, bool):
        raise DomainValidationException(f"金额类型无效: {amount!r}", field=field)
    try:
        value = Decimal(str(amount)) if isinstance(amount, float) else Decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise DomainValidationException(f"金额格式无效: {amount!r}", field=field)
    if not value.is_finite():
        raise DomainValidationException(f"金额必须为有限数值: {amount!r}", field=field)
    return value


def to_minor_units(amount: AmountLike, currency: str, *, field: str = "amount") -> int:
    """十进制金额（如 ``Decimal("50.00")``）转换为整数最小货币单位"""
    value = _to_decimal(amount, field)
    if value < 0:
        raise DomainValidationException(f"金额不能为负数: {amount}", field=field)
    scaled = value.scaleb(currency_exponent(currency))
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(minor: int, currency: str) -> Decimal:
    """整数最小货币单位还原为主单位十进制金额"""
    ensure_minor_units(minor, allow_zero=True)
    exponent = currency_exponent(currency)
    return Decimal(minor).scaleb(-exponent).quantize(Decimal(1).scaleb(-exponent))


def ensure_minor_units(value: object, *, field: str = "amount", allow_zero: bool = False) -> int:
    """
    校验整数最小货币单位

    拒绝布尔值、非整数、NaN/inf 及负数；值为整数的 float 与 Decimal 可接受并返回 ``int``。
    """
    if isinstance(value, bool) or value is None:
        raise DomainValidationException(f"金额类型无效: {value!r}", field=field)
    if isinstance(value, int):
        result = value
    elif isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            raise DomainValidationException(f"金额必须为整数最小货币单位: {value!r}", field=field)
        result = int(value)
    elif isinstance(value, Decimal):
        if not value.is_finite() or value != value.to_integral_value():
            raise DomainValidationException(f"金额必须为整数最小货币单位: {value!r}", field=field)
        result = int(value)
    else:
        raise DomainValidationException(f"金额类型无效: {value!r}", field=field)

    if result < 0 or (result == 0 and not allow_zero):
        raise DomainValidationException(
            f"金额必须大于0: {result}" if not allow_zero else f"金额不能为负数: {result}",
            field=field,
        )
    return result
