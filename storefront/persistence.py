"""
Storefront — 書き込みトランザクション

1 操作 = 1 トランザクション。複数ドキュメントにまたがる保証はしない。
DB エラーは握りつぶさず PersistenceFailure として呼び出し元に返す。
"""

import logging
from contextlib import asynccontextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import PersistenceFailure, StorefrontError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def write(session: AsyncSession, operation: str):
    try:
        yield
        await session.commit()
    except StorefrontError:
        await session.rollback()
        raise
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.exception("Failed to %s", operation)
        raise PersistenceFailure(operation) from exc
