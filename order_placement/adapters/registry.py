import importlib
import logging
from typing import Callable, Dict, Type

from order_placement.adapters.base import SupplierAdapter

logger = logging.getLogger(__name__)

ADAPTERS: Dict[str, Type[SupplierAdapter]] = {}


def register_adapter(name: str) -> Callable:
    def decorator(cls: Type[SupplierAdapter]) -> Type[SupplierAdapter]:
        ADAPTERS[name] = cls
        return cls
    return decorator


def resolve_adapter_class(name: str) -> Type[SupplierAdapter]:
    """Look up a registered adapter, falling back to a dotted import path."""
    if name in ADAPTERS:
        return ADAPTERS[name]
    module_path, _, class_name = name.rpartition(".")
    if not module_path:
        raise LookupError(f"Unknown supplier adapter: {name}")
    cls = getattr(importlib.import_module(module_path), class_name)
    if not issubclass(cls, SupplierAdapter):
        raise TypeError(f"{name} is not a SupplierAdapter")
    ADAPTERS[name] = cls
    return cls


def build_adapter(credential) -> SupplierAdapter:
    supplier = credential.supplier
    cls = resolve_adapter_class(supplier.adapter_class)
    logger.debug(f"[Adapters] Using {cls.__name__} for {supplier.name}")
    return cls(credential)
