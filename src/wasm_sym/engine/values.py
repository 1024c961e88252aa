"""Dual-mode operand values.

A value is either :class:`Concrete` (a masked unsigned integer plus its bit
width) or :class:`Symbolic` (a z3 bit-vector term plus its width). Every
integer operator below dispatches on that tag, so concrete execution never
builds solver terms while symbolic execution folds back to ``Concrete``
whenever z3 simplifies a term to a literal.
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Union

import z3

__all__ = [
    "Concrete",
    "Symbolic",
    "Value",
    "binary",
    "compare",
    "const",
    "convert",
    "fresh",
    "from_bool",
    "is_zero",
    "ite",
    "overflow_condition",
    "render",
    "select",
    "signed_division_overflow",
    "to_signed",
    "to_term",
    "truth",
    "unary",
]


def to_signed(value: int, bits: int) -> int:
    if value >= 1 << (bits - 1):
        return value - (1 << bits)
    return value


@dataclass(slots=True, frozen=True)
class Concrete:
    value: int
    bits: int

    is_symbolic = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", self.value & ((1 << self.bits) - 1))

    @property
    def signed(self) -> int:
        return to_signed(self.value, self.bits)

    def __repr__(self) -> str:
        return f"i{self.bits}:{self.value}"


@dataclass(slots=True, frozen=True, eq=False)
class Symbolic:
    term: z3.BitVecRef
    bits: int
    # Set when the value is the 0/1 encoding of a comparison, so branching
    # on it can use the comparison directly.
    cond: z3.BoolRef | None = None

    is_symbolic = True

    def __repr__(self) -> str:
        return f"i{self.bits}:<{self.term}>"


Value = Union[Concrete, Symbolic]
Truth = Union[bool, z3.BoolRef]


def const(value: int, bits: int) -> Concrete:
    return Concrete(value, bits)


def fresh(name: str, bits: int) -> Symbolic:
    return Symbolic(z3.BitVec(name, bits), bits)


def _make(term: z3.BitVecRef, bits: int, cond: z3.BoolRef | None = None) -> Value:
    term = z3.simplify(term)
    if z3.is_bv_value(term):
        return Concrete(term.as_long(), bits)
    return Symbolic(term, bits, cond)


def to_term(value: Value) -> z3.BitVecRef:
    if isinstance(value, Concrete):
        return z3.BitVecVal(value.value, value.bits)
    return value.term


def truth(value: Value) -> Truth:
    """Interpret an integer as a WebAssembly condition (non-zero is true)."""
    if isinstance(value, Concrete):
        return value.value != 0
    if value.cond is not None:
        return value.cond
    return value.term != z3.BitVecVal(0, value.bits)


def from_bool(flag: Truth) -> Value:
    if isinstance(flag, bool):
        return Concrete(int(flag), 32)
    flag = z3.simplify(flag)
    if z3.is_true(flag):
        return Concrete(1, 32)
    if z3.is_false(flag):
        return Concrete(0, 32)
    return Symbolic(z3.If(flag, z3.BitVecVal(1, 32), z3.BitVecVal(0, 32)), 32, flag)


def is_zero(value: Value) -> Truth:
    if isinstance(value, Concrete):
        return value.value == 0
    return value.term == z3.BitVecVal(0, value.bits)


def _div_s(a: int, b: int, bits: int) -> int:
    x, y = to_signed(a, bits), to_signed(b, bits)
    q = abs(x) // abs(y)
    return q if (x < 0) == (y < 0) else -q


def _rem_s(a: int, b: int, bits: int) -> int:
    x, y = to_signed(a, bits), to_signed(b, bits)
    r = abs(x) % abs(y)
    return -r if x < 0 else r


def _rotl(a: int, b: int, bits: int) -> int:
    k = b % bits
    return (a << k) | (a >> (bits - k)) if k else a


def _rotr(a: int, b: int, bits: int) -> int:
    k = b % bits
    return (a >> k) | (a << (bits - k)) if k else a


def _mask(y: z3.BitVecRef, bits: int) -> z3.BitVecRef:
    return y & z3.BitVecVal(bits - 1, bits)


_BINARY: dict[str, tuple[Callable[[int, int, int], int], Callable[[z3.BitVecRef, z3.BitVecRef, int], z3.BitVecRef]]] = {
    "add": (lambda a, b, n: a + b, lambda x, y, n: x + y),
    "sub": (lambda a, b, n: a - b, lambda x, y, n: x - y),
    "mul": (lambda a, b, n: a * b, lambda x, y, n: x * y),
    "div_s": (_div_s, lambda x, y, n: x / y),
    "div_u": (lambda a, b, n: a // b, lambda x, y, n: z3.UDiv(x, y)),
    "rem_s": (_rem_s, lambda x, y, n: z3.SRem(x, y)),
    "rem_u": (lambda a, b, n: a % b, lambda x, y, n: z3.URem(x, y)),
    "and": (lambda a, b, n: a & b, lambda x, y, n: x & y),
    "or": (lambda a, b, n: a | b, lambda x, y, n: x | y),
    "xor": (lambda a, b, n: a ^ b, lambda x, y, n: x ^ y),
    "shl": (lambda a, b, n: a << (b % n), lambda x, y, n: x << _mask(y, n)),
    "shr_s": (lambda a, b, n: to_signed(a, n) >> (b % n), lambda x, y, n: x >> _mask(y, n)),
    "shr_u": (lambda a, b, n: a >> (b % n), lambda x, y, n: z3.LShR(x, _mask(y, n))),
    "rotl": (_rotl, lambda x, y, n: z3.RotateLeft(x, y)),
    "rotr": (_rotr, lambda x, y, n: z3.RotateRight(x, y)),
}

_COMPARE: dict[str, tuple[Callable[[int, int, int], bool], Callable[[z3.BitVecRef, z3.BitVecRef], z3.BoolRef]]] = {
    "eq": (lambda a, b, n: a == b, lambda x, y: x == y),
    "ne": (lambda a, b, n: a != b, lambda x, y: x != y),
    "lt_s": (lambda a, b, n: to_signed(a, n) < to_signed(b, n), lambda x, y: x < y),
    "lt_u": (lambda a, b, n: a < b, z3.ULT),
    "gt_s": (lambda a, b, n: to_signed(a, n) > to_signed(b, n), lambda x, y: x > y),
    "gt_u": (lambda a, b, n: a > b, z3.UGT),
    "le_s": (lambda a, b, n: to_signed(a, n) <= to_signed(b, n), lambda x, y: x <= y),
    "le_u": (lambda a, b, n: a <= b, z3.ULE),
    "ge_s": (lambda a, b, n: to_signed(a, n) >= to_signed(b, n), lambda x, y: x >= y),
    "ge_u": (lambda a, b, n: a >= b, z3.UGE),
}

BINARY_OPS = frozenset(_BINARY)
COMPARE_OPS = frozenset(_COMPARE)


def binary(op: str, a: Value, b: Value) -> Value:
    """Apply a wrapping binary operator. Division by zero must be excluded by the caller."""
    concrete_fn, symbolic_fn = _BINARY[op]
    bits = a.bits
    if isinstance(a, Concrete) and isinstance(b, Concrete):
        return Concrete(concrete_fn(a.value, b.value, bits), bits)
    return _make(symbolic_fn(to_term(a), to_term(b), bits), bits)


def compare(op: str, a: Value, b: Value) -> Value:
    concrete_fn, symbolic_fn = _COMPARE[op]
    if isinstance(a, Concrete) and isinstance(b, Concrete):
        return Concrete(int(concrete_fn(a.value, b.value, a.bits)), 32)
    return from_bool(symbolic_fn(to_term(a), to_term(b)))


def _clz_term(x: z3.BitVecRef, bits: int) -> z3.BitVecRef:
    result = z3.BitVecVal(bits, bits)
    for i in range(bits):
        result = z3.If(z3.Extract(i, i, x) == 1, z3.BitVecVal(bits - 1 - i, bits), result)
    return result


def _ctz_term(x: z3.BitVecRef, bits: int) -> z3.BitVecRef:
    result = z3.BitVecVal(bits, bits)
    for i in reversed(range(bits)):
        result = z3.If(z3.Extract(i, i, x) == 1, z3.BitVecVal(i, bits), result)
    return result


def _popcnt_term(x: z3.BitVecRef, bits: int) -> z3.BitVecRef:
    return z3.Sum([z3.ZeroExt(bits - 1, z3.Extract(i, i, x)) for i in range(bits)])


def unary(op: str, a: Value) -> Value:
    bits = a.bits
    if op == "eqz":
        return from_bool(is_zero(a))
    if isinstance(a, Concrete):
        v = a.value
        if op == "clz":
            return Concrete(bits - v.bit_length(), bits)
        if op == "ctz":
            return Concrete((v & -v).bit_length() - 1 if v else bits, bits)
        if op == "popcnt":
            return Concrete(bin(v).count("1"), bits)
        raise ValueError(f"unknown unary operator {op}")
    builders = {"clz": _clz_term, "ctz": _ctz_term, "popcnt": _popcnt_term}
    return _make(builders[op](a.term, bits), bits)


def convert(op: str, a: Value) -> Value:
    """Integer width conversions: ``wrap``, ``extend_s``/``extend_u`` (32 -> 64), ``extendN_s``."""
    if op == "wrap":
        if isinstance(a, Concrete):
            return Concrete(a.value, 32)
        return _make(z3.Extract(31, 0, a.term), 32)
    if op in ("extend_s", "extend_u"):
        if isinstance(a, Concrete):
            return Concrete(a.signed if op == "extend_s" else a.value, 64)
        ext = z3.SignExt if op == "extend_s" else z3.ZeroExt
        return _make(ext(64 - a.bits, a.term), 64)
    if op.startswith("extend") and op.endswith("_s"):
        width = int(op[len("extend"):-2])
        bits = a.bits
        if isinstance(a, Concrete):
            return Concrete(to_signed(a.value & ((1 << width) - 1), width), bits)
        return _make(z3.SignExt(bits - width, z3.Extract(width - 1, 0, a.term)), bits)
    raise ValueError(f"unknown conversion {op}")


def overflow_condition(op: str, a: Value, b: Value) -> Truth:
    """Unsigned overflow of ``add``/``sub``/``mul`` (used by the checked arithmetic policy)."""
    bits = a.bits
    if isinstance(a, Concrete) and isinstance(b, Concrete):
        if op == "add":
            return a.value + b.value >= 1 << bits
        if op == "sub":
            return a.value < b.value
        if op == "mul":
            return a.value * b.value >= 1 << bits
        return False
    x, y = to_term(a), to_term(b)
    if op == "add":
        return z3.Not(z3.BVAddNoOverflow(x, y, False))
    if op == "sub":
        return z3.ULT(x, y)
    if op == "mul":
        return z3.Not(z3.BVMulNoOverflow(x, y, False))
    return False


def signed_division_overflow(a: Value, b: Value) -> Truth:
    """``INT_MIN / -1`` traps in ``div_s``."""
    bits = a.bits
    int_min = 1 << (bits - 1)
    minus_one = (1 << bits) - 1
    if isinstance(a, Concrete) and isinstance(b, Concrete):
        return a.value == int_min and b.value == minus_one
    return z3.And(to_term(a) == z3.BitVecVal(int_min, bits), to_term(b) == z3.BitVecVal(minus_one, bits))


def ite(flag: Truth, a: Value, b: Value) -> Value:
    if isinstance(flag, bool):
        return a if flag else b
    if isinstance(a, Concrete) and isinstance(b, Concrete) and a.value == b.value:
        return a
    return _make(z3.If(flag, to_term(a), to_term(b)), a.bits)


def select(condition: Value, a: Value, b: Value) -> Value:
    return ite(truth(condition), a, b)


def render(value: Value, limit: int = 120) -> str:
    if isinstance(value, Concrete):
        return str(value.value)
    text = value.term.sexpr().replace("\n", " ")
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."
