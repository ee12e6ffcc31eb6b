"""
数据库模型基类（SQLAlchemy 2.0 风格）与结算表共用的列类型
"""
from datetime import datetime, timezone

from sqlalchemy import Numeric
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


# 元数据对象用于数据库迁移
metadata = Base.metadata


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def Money() -> Numeric:
    """金额列：两位小数，读出为 Decimal"""
    return Numeric(15, 2, asdecimal=True)
