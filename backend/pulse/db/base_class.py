from typing import Any

from sqlalchemy import BigInteger, Integer
from sqlalchemy.orm import as_declarative, declared_attr

# SQLite 只对 INTEGER PRIMARY KEY 自增
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


@as_declarative()
class Base:
    id: Any
    __name__: str

    # Generate __tablename__ automatically
    @declared_attr
    def __tablename__(cls) -> str:
        return cls.__name__.lower()
