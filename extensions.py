from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from assembler import BFError, Instruction


EXTENSION_API_VERSION = 1


class BFExtensionError(BFError):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class StepContext:
    step_index: int
    pc: int
    instruction: Instruction
    cursor: int


StepHandler = Callable[[Any, StepContext], None]


@dataclass
class HookRegistry:
    # event -> list[(priority, handler, ext_name)]
    _events: Dict[str, List[Tuple[int, Callable[..., None], str]]] = field(default_factory=dict)
    # list[(every_n, handler, ext_name, name)]
    _step_rules: List[Tuple[int, StepHandler, str, str]] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int, ext_name: str) -> None:
        self._events.setdefault(event, []).append((priority, handler, ext_name))
        self._events[event].sort(key=lambda t: t[0], reverse=True)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for _priority, handler, _ext in self._events.get(event, []):
            handler(*args, **kwargs)

    def add_step_rule(self, *, name: str, every_n: int, handler: StepHandler, ext_name: str) -> None:
        if every_n <= 0:
            raise BFExtensionError("every_n_steps must be >= 1")
        self._step_rules.append((every_n, handler, ext_name, name))

    @property
    def has_step_rules(self) -> bool:
        return bool(self._step_rules)

    def after_step(self, machine: Any, ctx: StepContext) -> None:
        for every_n, handler, _ext, _name in self._step_rules:
            if ctx.step_index % every_n == 0:
                handler(machine, ctx)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)


class ExtensionAPI:
    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name

    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        if handler is None:
            def deco(fn: Callable[..., None]) -> Callable[..., None]:
                self._services.hook_registry.on_event(event, fn, priority=priority, ext_name=self._ext_name)
                return fn
            return deco
        self._services.hook_registry.on_event(event, handler, priority=priority, ext_name=self._ext_name)
        return handler

    def every_n_steps(self, every_n: int, handler: Optional[StepHandler] = None, *, name: str = ""):
        if handler is None:
            def deco(fn: StepHandler) -> StepHandler:
                self._services.hook_registry.add_step_rule(name=name or fn.__name__, every_n=every_n, handler=fn, ext_name=self._ext_name)
                return fn
            return deco
        self._services.hook_registry.add_step_rule(name=name or handler.__name__, every_n=every_n, handler=handler, ext_name=self._ext_name)
        return handler


def _unique_module_name(path: str) -> str:
    base = os.path.basename(path)
    digest = hashlib.sha256(os.path.abspath(path).encode("utf-8")).hexdigest()[:12]
    safe = "".join(ch if ch.isalnum() else "_" for ch in base)
    return f"bfvm_ext_{safe}_{digest}"


def load_extension_module(path: str) -> Any:
    if not os.path.exists(path):
        raise BFExtensionError(f"Extension not found: {path}")
    mod_name = _unique_module_name(path)
    spec = importlib.util.spec_from_file_location(mod_name, path)
    if spec is None or spec.loader is None:
        raise BFExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)

    # Let extensions import siblings by temporarily prepending their directory.
    ext_dir = os.path.dirname(os.path.abspath(path))
    sys.path.insert(0, ext_dir)
    try:
        spec.loader.exec_module(module)  # type: ignore[union-attr]
    except Exception as exc:
        raise BFExtensionError(f"Failed to import extension {path}: {exc}") from exc
    finally:
        if sys.path and sys.path[0] == ext_dir:
            sys.path.pop(0)
    return module


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = RuntimeServices()
    for path in (os.path.abspath(p) for p in paths):
        module = load_extension_module(path)
        api_version = getattr(module, "BFVM_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
        if api_version != EXTENSION_API_VERSION:
            raise BFExtensionError(
                f"Extension {path} requires API {api_version}, host supports {EXTENSION_API_VERSION}"
            )
        register = getattr(module, "bfvm_register", None)
        if register is None or not callable(register):
            raise BFExtensionError(f"Extension {path} must define callable bfvm_register(ext)")
        ext_name = getattr(module, "BFVM_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0])
        ext = ExtensionAPI(services=services, ext_name=str(ext_name))
        try:
            register(ext)
        except BFExtensionError:
            raise
        except Exception as exc:
            raise BFExtensionError(f"Extension {path} failed to register: {exc}") from exc
    return services
