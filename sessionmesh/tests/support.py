"""Constants and builders shared by the test modules."""

from typing import Any, Sequence

from sessionmesh.core.config import PoolConfig, TransactionConfig
from sessionmesh.transport.protocols import (
    Field,
    FieldType,
    PartialResultSet,
    ResultSetMetadata,
    TypeCode,
)

DATABASE = "projects/p/instances/i/databases/d"
SELECT_SQL = "SELECT NUM, NAME FROM NUMBERS"
UPDATE_SQL = "UPDATE NUMBERS SET NAME='Unknown' WHERE NUM IN (5, 6)"
UPDATE_ROW_COUNT = 2
CHUNKED_SQL = "SELECT * FROM TestTable"

FAST_TRANSACTIONS = TransactionConfig(base_delay_ms=1, max_delay_ms=10)

STRING = FieldType.of(TypeCode.STRING)
STRING_ARRAY = FieldType.array(STRING)

# ColString STRING, ColStringArray ARRAY<STRING>
TEST_TABLE_METADATA = ResultSetMetadata(fields=(
    Field("ColString", STRING),
    Field("ColStringArray", STRING_ARRAY),
))


def pool_config(**overrides: Any) -> PoolConfig:
    """PoolConfig with no prefill and housekeeping disabled unless overridden."""
    options: dict[str, Any] = {"min": 0, "max": 100, "inc_step": 1, "housekeeping_interval_s": 0}
    options.update(overrides)
    return PoolConfig(**options)


def chunk(
    values: Sequence[Any],
    token: str = "",
    chunked: bool = False,
    with_metadata: bool = False,
) -> PartialResultSet:
    """PartialResultSet over the TestTable shape."""
    return PartialResultSet(
        values=tuple(values),
        metadata=TEST_TABLE_METADATA if with_metadata else None,
        chunked_value=chunked,
        resume_token=token.encode(),
    )


def assert_ok(result, message: str = "Expected Ok result"):
    """Assert that result is Ok."""
    if result.is_err():
        raise AssertionError(f"{message}: {result.error}")
    return result.unwrap()


def assert_err(result, message: str = "Expected Err result"):
    """Assert that result is Err."""
    if result.is_ok():
        raise AssertionError(f"{message}: Got Ok({result.unwrap()})")
    return result.error
