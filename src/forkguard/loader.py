"""
Isolated code loading for worker jobs.

An ``IsolatedLoader`` resolves modules from its own list of path entries
(directories or zip archives) without registering them in ``sys.modules``,
so job dependencies never collide with the worker's own. Modules it defines
get their own ``__import__``, which routes their imports back through the
loader.
"""

import builtins
import importlib
import importlib.machinery
import importlib.util
import logging
import os
import sys
import threading
from collections.abc import Callable
from types import ModuleType

logger = logging.getLogger(__name__)

PlatformLookup = Callable[[str], ModuleType | None]

_UNRESOLVED = object()


class SymbolNotFoundError(ModuleNotFoundError):
    """Neither the loader's entries nor its parent provide the symbol."""


def _find_platform_lookup() -> PlatformLookup | None:
    """
    Return a lookup that serves platform modules from the running interpreter.

    Standard library and built-in modules belong to the runtime and are never
    loaded from job entries. The standard library name list only exists on
    newer interpreters; without it there is no platform lookup.
    """
    stdlib_names = getattr(sys, "stdlib_module_names", None)
    if stdlib_names is None:
        return None
    platform_names = frozenset(stdlib_names) | frozenset(sys.builtin_module_names)

    def lookup(name: str) -> ModuleType | None:
        if name.partition(".")[0] not in platform_names:
            return None
        return importlib.import_module(name)

    return lookup


class IsolatedLoader:
    """
    Loads modules from entries added via ``add_entry``.

    With child-first delegation (the default) a module is looked up among the
    platform modules, then in this loader's entries, then in the parent. With
    parent-first delegation the parent is asked before the entries.
    """

    # unresolved, a lookup callable, or None once detected absent
    _platform_lookup: object = _UNRESOLVED

    def __init__(
        self,
        parent: "IsolatedLoader | None" = None,
        child_first: bool = True,
        role_name: str | None = None,
    ) -> None:
        """
        Initialize the IsolatedLoader.

        Args:
            parent: Loader to delegate to. None delegates to the interpreter's
                regular import system.
            child_first: Search own entries before delegating to the parent.
            role_name: Name shown in the loader's repr.
        """
        self._parent = parent
        self._child_first = child_first
        self._role_name = role_name
        self._entries: list[str] = []
        self._entry_set: set[str] = set()
        self._entries_lock = threading.Lock()
        self._load_lock = threading.RLock()
        self._modules: dict[str, ModuleType] = {}
        self._builtins = dict(vars(builtins))
        self._builtins["__import__"] = self._import

    def __repr__(self) -> str:
        return f"IsolatedLoader(role_name={self._role_name!r})"

    @property
    def child_first(self) -> bool:
        """Get the delegation mode."""
        return self._child_first

    @property
    def entries(self) -> list[str]:
        """Get a copy of the active search path."""
        with self._entries_lock:
            return list(self._entries)

    def add_entry(self, entry: str | os.PathLike[str]) -> None:
        """Append an entry to the search path unless it is already there."""
        path = os.fspath(entry)
        with self._entries_lock:
            if path in self._entry_set:
                return
            self._entry_set.add(path)
            self._entries.append(path)

    def load_module(self, name: str) -> ModuleType:
        """
        Load a module by its dotted name.

        Raises:
            SymbolNotFoundError: If no source provides the module.
        """
        with self._load_lock:
            return self._load_module(name)

    def load_symbol(self, name: str) -> object:
        """
        Load ``"pkg.module"`` or ``"pkg.module:attr.path"``.

        Raises:
            SymbolNotFoundError: If the module or the attribute is missing.
        """
        module_name, _, attr_path = name.partition(":")
        with self._load_lock:
            obj: object = self._load_module(module_name)
            for attr in filter(None, attr_path.split(".")):
                try:
                    obj = getattr(obj, attr)
                except AttributeError as e:
                    raise SymbolNotFoundError(
                        f"{name!r} not found by {self!r}", name=module_name
                    ) from e
            return obj

    @classmethod
    def _lookup_method(cls) -> PlatformLookup | None:
        lookup = cls.__dict__.get("_platform_lookup", _UNRESOLVED)
        if lookup is _UNRESOLVED:
            # racing threads compute the same result, the last write wins
            lookup = _find_platform_lookup()
            cls._platform_lookup = lookup
        return lookup

    def _load_module(self, name: str) -> ModuleType:
        module = self._modules.get(name)
        if module is not None:
            return module

        if not self._child_first:
            try:
                return self._delegate(name)
            except ModuleNotFoundError as e:
                module = self._define_module(name)
                if module is None:
                    raise SymbolNotFoundError(f"{name!r} not found by {self!r}", name=name) from e
                return module

        module = self._lookup_platform_module(name)
        if module is None:
            module = self._define_module(name)
        if module is None:
            try:
                module = self._delegate(name)
            except ModuleNotFoundError as e:
                raise SymbolNotFoundError(f"{name!r} not found by {self!r}", name=name) from e
        return module

    def _delegate(self, name: str) -> ModuleType:
        if self._parent is None:
            return importlib.import_module(name)
        return self._parent.load_module(name)

    def _lookup_platform_module(self, name: str) -> ModuleType | None:
        lookup = self._lookup_method()
        if lookup is None:
            return None
        try:
            return lookup(name)
        except Exception:
            logger.debug("Platform lookup of %s failed", name, exc_info=True)
            return None

    def _define_module(self, name: str) -> ModuleType | None:
        """Load ``name`` from this loader's entries, or return None."""
        package_name, _, child_name = name.rpartition(".")
        package = None
        if package_name:
            try:
                package = self._load_module(package_name)
            except ModuleNotFoundError:
                return None
            # submodules of delegated packages are not ours to define
            if self._modules.get(package_name) is not package:
                return None
            search_path = getattr(package, "__path__", None)
            if search_path is None:
                return None
        else:
            search_path = self.entries

        spec = importlib.machinery.PathFinder.find_spec(name, list(search_path))
        if spec is None or spec.loader is None or spec.origin is None:
            return None

        module = importlib.util.module_from_spec(spec)
        module.__dict__["__builtins__"] = self._builtins
        self._modules[name] = module
        try:
            spec.loader.exec_module(module)
        except BaseException:
            del self._modules[name]
            raise
        if package is not None:
            setattr(package, child_name, module)
        logger.debug("%r defined %s from %s", self, name, spec.origin)
        return module

    def _import(self, name, globals=None, locals=None, fromlist=(), level=0):
        """``__import__`` replacement for modules defined by this loader."""
        if level > 0:
            absolute = importlib.util.resolve_name("." * level + name, _package_of(globals))
        else:
            absolute = name

        with self._load_lock:
            module = self._load_module(absolute)
            if not fromlist:
                if level > 0:
                    return module
                return self._load_module(name.partition(".")[0])

            if hasattr(module, "__path__"):
                items = list(fromlist)
                if "*" in items:
                    items.remove("*")
                    items.extend(getattr(module, "__all__", ()))
                for item in items:
                    if hasattr(module, item):
                        continue
                    try:
                        self._load_module(f"{module.__name__}.{item}")
                    except ModuleNotFoundError:
                        # the import statement raises ImportError for the missing name
                        continue
            return module


def _package_of(globals: dict | None) -> str:
    if not globals:
        raise ImportError("relative import outside of a package")
    package = globals.get("__package__")
    if package:
        return package
    module_name = globals.get("__name__", "")
    if "__path__" in globals:
        return module_name
    return module_name.rpartition(".")[0]
