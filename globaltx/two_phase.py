"""Discovery and invocation of the prepare/commit/rollback methods of a service."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from .context import BusinessActionContext, Context

PREPARE = "prepare"
COMMIT = "commit"
ROLLBACK = "rollback"
_ROLES = frozenset({PREPARE, COMMIT, ROLLBACK})
_MARK_ATTR = "_two_phase_mark"

_CO_VARARGS = 0x04
_CO_VARKEYWORDS = 0x08

_POSITIONAL = "positional"
_VAR_POSITIONAL = "var_positional"
_KEYWORD_ONLY = "keyword_only"
_VAR_KEYWORD = "var_keyword"

_EMPTY = object()


class TwoPhaseActionError(ValueError):
    """A service does not describe a usable two-phase action."""


@dataclass(frozen=True)
class _Mark:
    role: str | None
    service_name: str


@dataclass(frozen=True)
class _Param:
    name: str
    kind: str
    annotation: Any


def two_phase(role: str | None = None, service_name: str = "") -> Callable:
    """Mark a function as the prepare, commit or rollback step of a service.

    ``service_name`` on any marked member names the whole action.
    """
    if role is not None and role not in _ROLES:
        raise ValueError(f"unknown two phase role: {role!r}")

    def decorate(func: Callable) -> Callable:
        target = getattr(func, "__func__", func)
        setattr(target, _MARK_ATTR, _Mark(role, service_name or ""))
        return func

    return decorate


@dataclass(frozen=True)
class TwoPhaseAction:
    """The three steps of a two-phase service and the name it is known by."""

    service: Any
    action_name: str
    prepare_method_name: str
    commit_method_name: str
    rollback_method_name: str
    prepare_method: Callable[..., Any] = field(repr=False, compare=False)
    commit_method: Callable[..., Any] = field(repr=False, compare=False)
    rollback_method: Callable[..., Any] = field(repr=False, compare=False)

    def prepare(self, ctx: Context, *args: Any) -> bool:
        return bool(self.prepare_method(ctx, *args))

    def commit(self, ctx: Context, business_action_context: BusinessActionContext) -> bool:
        return bool(self.commit_method(ctx, business_action_context))

    def rollback(self, ctx: Context, business_action_context: BusinessActionContext) -> bool:
        return bool(self.rollback_method(ctx, business_action_context))


def _annotation_ok(annotation: Any, expected: type) -> bool:
    return (
        annotation is _EMPTY
        or annotation is expected
        or annotation == expected.__name__
    )


def _parameters(func: Any) -> tuple[list[_Param], Any] | None:
    """Return the parameters and return annotation of a callable, or None."""
    target = func
    skip_first = False
    if hasattr(target, "__func__") and hasattr(target, "__self__"):
        target = target.__func__
        skip_first = True
    code = getattr(target, "__code__", None)
    if code is None:
        call = getattr(type(func), "__call__", None)
        code = getattr(call, "__code__", None)
        if code is None:
            return None
        target = call
        skip_first = True

    annotations = getattr(target, "__annotations__", None) or {}
    names = code.co_varnames
    argcount = code.co_argcount
    kwonly = code.co_kwonlyargcount

    def make(name: str, kind: str) -> _Param:
        return _Param(name, kind, annotations.get(name, _EMPTY))

    params = [make(name, _POSITIONAL) for name in names[:argcount]]
    extra = argcount + kwonly
    if code.co_flags & _CO_VARARGS:
        params.append(make(names[extra], _VAR_POSITIONAL))
        extra += 1
    params.extend(make(name, _KEYWORD_ONLY) for name in names[argcount:argcount + kwonly])
    if code.co_flags & _CO_VARKEYWORDS:
        params.append(make(names[extra], _VAR_KEYWORD))

    if skip_first and params and params[0].kind == _POSITIONAL:
        params = params[1:]
    return params, annotations.get("return", _EMPTY)


def _fits_prepare(params: list[_Param]) -> bool:
    if not params:
        return False
    first = params[0]
    if first.kind not in (_POSITIONAL, _VAR_POSITIONAL):
        return False
    return _annotation_ok(first.annotation, Context)


def _fits_phase_two(params: list[_Param]) -> bool:
    if len(params) != 2 or any(p.kind != _POSITIONAL for p in params):
        return False
    ctx_param, bac_param = params
    return _annotation_ok(ctx_param.annotation, Context) and _annotation_ok(
        bac_param.annotation, BusinessActionContext
    )


def _matches(role: str, mark: _Mark | None, bound: Any) -> bool:
    if mark is None or mark.role != role or not callable(bound):
        return False
    described = _parameters(bound)
    if described is None:
        return False
    params, returns = described
    if not _annotation_ok(returns, bool):
        return False
    return _fits_prepare(params) if role == PREPARE else _fits_phase_two(params)


def _members(service: Any) -> dict[str, Any]:
    members: dict[str, Any] = {}
    for klass in reversed(type(service).__mro__):
        if klass is object:
            continue
        members.update(vars(klass))
    members.update(getattr(service, "__dict__", {}))
    return members


def _mark_of(raw: Any) -> _Mark | None:
    mark = getattr(getattr(raw, "__func__", raw), _MARK_ATTR, None)
    return mark if isinstance(mark, _Mark) else None


def _implements_interface(service: Any) -> bool:
    if isinstance(service, type):
        return False
    return all(
        callable(getattr(service, name, None))
        for name in (PREPARE, COMMIT, ROLLBACK, "get_action_name")
    )


def _parse_by_interface(service: Any) -> TwoPhaseAction:
    return TwoPhaseAction(
        service=service,
        action_name=service.get_action_name(),
        prepare_method_name=PREPARE,
        commit_method_name=COMMIT,
        rollback_method_name=ROLLBACK,
        prepare_method=service.prepare,
        commit_method=service.commit,
        rollback_method=service.rollback,
    )


def _parse_by_marks(service: Any) -> TwoPhaseAction:
    if isinstance(service, type) or type(service).__module__ == "builtins":
        raise TwoPhaseActionError("invalid type kind")

    found: dict[str, tuple[str, Callable[..., Any]]] = {}
    action_name = ""
    for name, raw in _members(service).items():
        mark = _mark_of(raw)
        if mark is None:
            continue
        if not action_name and mark.service_name:
            action_name = mark.service_name
        bound = getattr(service, name, None)
        for role in (PREPARE, COMMIT, ROLLBACK):
            if _matches(role, mark, bound):
                found[role] = (name, bound)
                break

    for role in (PREPARE, COMMIT, ROLLBACK):
        if role not in found:
            raise TwoPhaseActionError(f"missing {role} method")
    if not action_name:
        raise TwoPhaseActionError("missing two phase name")

    return TwoPhaseAction(
        service=service,
        action_name=action_name,
        prepare_method_name=found[PREPARE][0],
        commit_method_name=found[COMMIT][0],
        rollback_method_name=found[ROLLBACK][0],
        prepare_method=found[PREPARE][1],
        commit_method=found[COMMIT][1],
        rollback_method=found[ROLLBACK][1],
    )


def parse_two_phase_action(service: Any) -> TwoPhaseAction:
    """Build a TwoPhaseAction from a service.

    A service with ``prepare``, ``commit``, ``rollback`` and ``get_action_name``
    methods is used directly; otherwise members marked with ``two_phase`` are used.
    """
    if _implements_interface(service):
        return _parse_by_interface(service)
    return _parse_by_marks(service)


def is_two_phase_action(service: Any) -> bool:
    try:
        parse_two_phase_action(service)
    except TwoPhaseActionError:
        return False
    return True