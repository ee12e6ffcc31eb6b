"""
引用码生成：支付引用（8位 Crockford base32）与供应商采购单号，以及有限次冲突重试
"""
from __future__ import annotations

import secrets
from typing import Awaitable, Callable, TypeVar

from domain.common.exceptions import ReferenceCollisionError, ReferenceExhaustedException

T = TypeVar("T")

# Crockford base32：去掉 I L O U，避免人工抄写歧义
CROCKFORD_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_BASE36_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"

DEFAULT_MAX_ATTEMPTS = 5


def generate_payment_reference() -> str:
    """40 位随机数编码为 8 个 Crockford base32 字符，永不返回全零"""
    while True:
        value = int.from_bytes(secrets.token_bytes(5), "big")
        if value == 0:
            continue
        chars = []
        for _ in range(8):
            chars.append(CROCKFORD_ALPHABET[value & 0x1F])
            value >>= 5
        return "".join(reversed(chars))


def _chunk(length: int) -> str:
    return "".join(secrets.choice(_BASE36_ALPHABET) for _ in range(length))


def generate_supplier_order_ref() -> str:
    """SPO-XXXX-XXXX"""
    return f"SPO-{_chunk(4)}-{_chunk(4)}"


async def mint_with_retry(
    create: Callable[[str], Awaitable[T]],
    generate: Callable[[], str],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    kind: str = "reference",
) -> T:
    """
    生成引用码并调用 create(code) 落库。

    只有 ReferenceCollisionError 会触发换码重试；其他异常原样抛出。
    连续冲突 max_attempts 次后抛出 ReferenceExhaustedException。
    """
    for _ in range(max(1, max_attempts)):
        code = generate()
        try:
            return await create(code)
        except ReferenceCollisionError:
            continue
    raise ReferenceExhaustedException(kind, max_attempts)
