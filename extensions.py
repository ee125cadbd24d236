from __future__ import annotations

import hashlib
import importlib.util
import logging
import os
import sys
from dataclasses import dataclass, field
from types import ModuleType
from typing import Any, Callable, Dict, List, Optional, Sequence

from lexer import StepwiseError


EXTENSION_API_VERSION = 1

ALL_EVENTS = "*"

logger = logging.getLogger(__name__)

Observer = Callable[[Any, Any], None]


class StepwiseExtensionError(StepwiseError):
    pass


class ObserverError(StepwiseExtensionError):
    """An observer raised something other than an ExecutionFault.

    ``owner`` is the registering extension, or None for observers the host
    registered directly on a HookRegistry.
    """

    def __init__(self, owner: Optional[str], target: str, cause: BaseException) -> None:
        who = f"Extension '{owner}' observer" if owner else "Observer"
        super().__init__(f"{who} for {target} failed: {cause}")
        self.owner = owner
        self.target = target
        self.cause = cause


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class StepContext:
    step_index: int
    event_type: str
    event: Any  # Event


@dataclass(frozen=True)
class _EventObserver:
    priority: int
    handler: Observer
    owner: Optional[str]


@dataclass(frozen=True)
class _StepRule:
    name: str
    every_n: int
    handler: Callable[[Any, StepContext], None]
    owner: Optional[str]


@dataclass
class HookRegistry:
    """Observers keyed by event type, plus rules that fire every N events.

    ``dispatch`` lets ExecutionFault through untouched, so an observer can
    fault a run with its own code. Any other exception is re-raised as an
    ObserverError naming the extension that registered the observer.
    """

    _observers: Dict[str, List[_EventObserver]] = field(default_factory=dict)
    _step_rules: List[_StepRule] = field(default_factory=list)

    def on_event(self, event_type: str, handler: Observer, *, priority: int = 0, owner: Optional[str] = None) -> None:
        bucket = self._observers.setdefault(event_type, [])
        bucket.append(_EventObserver(priority, handler, owner))
        # Stable, so equal priorities keep registration order.
        bucket.sort(key=lambda o: o.priority, reverse=True)

    def add_step_rule(
        self,
        *,
        name: str,
        every_n: int,
        handler: Callable[[Any, StepContext], None],
        owner: Optional[str] = None,
    ) -> None:
        if every_n <= 0:
            raise StepwiseExtensionError(f"Step rule '{name}' needs every_n >= 1, got {every_n}")
        self._step_rules.append(_StepRule(name, every_n, handler, owner))

    def dispatch(self, state: Any, event: Any) -> None:
        """Run the observers of ``event.type``, then the wildcard observers, then due step rules."""
        from interpreter import ExecutionFault

        target = f"'{event.type}'"
        for observer in self._observers.get(event.type, []) + self._observers.get(ALL_EVENTS, []):
            try:
                observer.handler(state, event)
            except ExecutionFault:
                raise
            except Exception as exc:
                raise ObserverError(observer.owner, target, exc) from exc

        ctx = StepContext(step_index=event.step, event_type=event.type, event=event)
        for rule in self._step_rules:
            if ctx.step_index % rule.every_n:
                continue
            try:
                rule.handler(state, ctx)
            except ExecutionFault:
                raise
            except Exception as exc:
                raise ObserverError(rule.owner, f"step rule '{rule.name}'", exc) from exc

    @property
    def empty(self) -> bool:
        return not self._observers and not self._step_rules


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)

    def describe(self) -> List[str]:
        return [f"{m.name} {m.version} (api {m.requires_api})" for m in self.metadata]


class ExtensionAPI:
    """The object handed to an extension's ``stepwise_register``."""

    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self.name = ext_name

    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        if requires_api > EXTENSION_API_VERSION:
            raise StepwiseExtensionError(
                f"Extension '{name}' {version} needs API {requires_api}; this host provides {EXTENSION_API_VERSION}"
            )
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    def on_event(self, event_type: str, handler: Optional[Observer] = None, *, priority: int = 0):
        registry = self._services.hook_registry

        def attach(fn: Observer) -> Observer:
            registry.on_event(event_type, fn, priority=priority, owner=self.name)
            return fn

        return attach if handler is None else attach(handler)

    def every_n_steps(self, every_n: int, handler: Optional[Callable[[Any, StepContext], None]] = None, *, name: str = ""):
        registry = self._services.hook_registry

        def attach(fn: Callable[[Any, StepContext], None]) -> Callable[[Any, StepContext], None]:
            registry.add_step_rule(name=name or fn.__name__, every_n=every_n, handler=fn, owner=self.name)
            return fn

        return attach if handler is None else attach(handler)


def _module_name_for(path: str) -> str:
    stem = os.path.splitext(os.path.basename(path))[0]
    key = hashlib.sha256(path.encode("utf-8")).hexdigest()[:12]
    return "stepwise_ext_" + "".join(ch if ch.isalnum() else "_" for ch in stem) + "_" + key


def import_extension(path: str) -> ModuleType:
    """Execute an extension file as a fresh module; its directory is importable while it loads."""
    path = os.path.abspath(path)
    if not os.path.isfile(path):
        raise StepwiseExtensionError(f"Extension not found: {path}")
    spec = importlib.util.spec_from_file_location(_module_name_for(path), path)
    if spec is None or spec.loader is None:
        raise StepwiseExtensionError(f"Not a loadable Python module: {path}")
    module = importlib.util.module_from_spec(spec)
    home = os.path.dirname(path)
    sys.path.insert(0, home)
    try:
        spec.loader.exec_module(module)
    finally:
        if home in sys.path:
            sys.path.remove(home)
    return module


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    """Import each extension file and let it register its observers."""
    services = RuntimeServices()
    for path in paths:
        module = import_extension(path)
        declared = getattr(module, "STEPWISE_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
        if declared != EXTENSION_API_VERSION:
            raise StepwiseExtensionError(
                f"Extension {path} targets API {declared}; this host provides {EXTENSION_API_VERSION}"
            )
        register = getattr(module, "stepwise_register", None)
        if not callable(register):
            raise StepwiseExtensionError(f"Extension {path} has no callable stepwise_register(ext)")
        name = str(getattr(module, "STEPWISE_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0]))
        register(ExtensionAPI(services=services, ext_name=name))
        logger.debug("registered extension %s from %s", name, path)
    return services
