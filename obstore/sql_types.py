"""Statement structures shared by the SQL front end and the storage handler."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Union

MAX_NUM = 20
MAX_REL_NAME = 20
MAX_ATTR_NAME = 20
MAX_ERROR_MESSAGE = 20
MAX_DATA = 50

CLIENT_ADDRESS = "CLIENT_ADDRESS"
MAX_CONNECTION_NUM = "MAX_CONNECTION_NUM"
MAX_CONNECTION_NUM_DEFAULT = 8192
PORT = "PORT"
PORT_DEFAULT = 16880
SOCKET_BUFFER_SIZE = 8192
SESSION_STAGE_NAME = "SessionStage"


class AttrType(IntEnum):
    """Type of an attribute value."""

    CHARS = 0
    INTS = 1
    FLOATS = 2


class CompOp(IntEnum):
    """Comparison operator of a condition."""

    EQUAL = 0
    LESS_EQUAL = 1
    NOT_EQUAL = 2
    LESS_THAN = 3
    GREAT_EQUAL = 4
    GREAT_THAN = 5
    NO_OP = 6

    @property
    def symbol(self) -> str:
        return _OP_SYMBOLS[self]


_OP_SYMBOLS = {
    CompOp.EQUAL: "=",
    CompOp.LESS_EQUAL: "<=",
    CompOp.NOT_EQUAL: "<>",
    CompOp.LESS_THAN: "<",
    CompOp.GREAT_EQUAL: ">=",
    CompOp.GREAT_THAN: ">",
    CompOp.NO_OP: "",
}


class SqlFlag(IntEnum):
    """Kind of a parsed statement."""

    ERROR = 0
    SELECT = 1
    INSERT = 2
    UPDATE = 3
    DELETE = 4
    CREATE_TABLE = 5
    DROP_TABLE = 6
    CREATE_INDEX = 7
    DROP_INDEX = 8
    HELP = 9
    EXIT = 10


def _check_count(what: str, items: list) -> None:
    if len(items) > MAX_NUM:
        raise ValueError(f"too many {what}: {len(items)} > {MAX_NUM}")


@dataclass(frozen=True)
class RelAttr:
    """An attribute, optionally qualified by its relation."""

    attr_name: str
    rel_name: str | None = None

    def __str__(self) -> str:
        if self.rel_name is None:
            return self.attr_name
        return f"{self.rel_name}.{self.attr_name}"


_PY_TYPES = {
    AttrType.CHARS: (str,),
    AttrType.INTS: (int,),
    AttrType.FLOATS: (float, int),
}


@dataclass(frozen=True)
class Value:
    """A typed literal value."""

    type: AttrType
    data: str | int | float

    def __post_init__(self) -> None:
        expected = _PY_TYPES[AttrType(self.type)]
        if isinstance(self.data, bool) or not isinstance(self.data, expected):
            raise TypeError(
                f"value {self.data!r} does not match type {AttrType(self.type).name}"
            )
        if self.type == AttrType.FLOATS:
            object.__setattr__(self, "data", float(self.data))


Operand = Union[RelAttr, Value]


@dataclass(frozen=True)
class Condition:
    """A comparison between two operands, each an attribute or a value."""

    left: Operand
    op: CompOp
    right: Operand

    @property
    def lhs_is_attr(self) -> bool:
        return isinstance(self.left, RelAttr)

    @property
    def rhs_is_attr(self) -> bool:
        return isinstance(self.right, RelAttr)


@dataclass
class Selects:
    """A select statement."""

    attributes: list[RelAttr] = field(default_factory=list)
    relations: list[str] = field(default_factory=list)
    conditions: list[Condition] = field(default_factory=list)

    def __post_init__(self) -> None:
        _check_count("selected attributes", self.attributes)
        _check_count("relations", self.relations)
        _check_count("conditions", self.conditions)


@dataclass
class Inserts:
    """An insert statement."""

    relation_name: str
    values: list[Value] = field(default_factory=list)

    def __post_init__(self) -> None:
        _check_count("values", self.values)


@dataclass
class Deletes:
    """A delete statement."""

    relation_name: str
    conditions: list[Condition] = field(default_factory=list)

    def __post_init__(self) -> None:
        _check_count("conditions", self.conditions)


@dataclass
class Updates:
    """An update statement setting one attribute."""

    relation_name: str
    attribute_name: str
    value: Value
    conditions: list[Condition] = field(default_factory=list)

    def __post_init__(self) -> None:
        _check_count("conditions", self.conditions)


@dataclass(frozen=True)
class AttrInfo:
    """Name, type and length of a table attribute."""

    name: str
    type: AttrType
    length: int


@dataclass
class CreateTable:
    """A create table statement."""

    relation_name: str
    attributes: list[AttrInfo] = field(default_factory=list)

    def __post_init__(self) -> None:
        _check_count("attributes", self.attributes)


@dataclass(frozen=True)
class DropTable:
    """A drop table statement."""

    relation_name: str


@dataclass(frozen=True)
class CreateIndex:
    """A create index statement."""

    index_name: str
    relation_name: str
    attribute_name: str


@dataclass(frozen=True)
class DropIndex:
    """A drop index statement."""

    index_name: str