"""
Known job kinds, keyed by the tag stored in `JobQueueEntry.job_class`.
"""
from __future__ import annotations

from core.exceptions import JobRegistryError

_REGISTRY: dict[str, type] = {}


def register_job(tag: str):
    def decorator(cls):
        existing = _REGISTRY.get(tag)
        if existing is not None and existing is not cls:
            raise JobRegistryError(f"Job tag '{tag}' already registered by {existing.__name__}", tag=tag)
        cls.tag = tag
        _REGISTRY[tag] = cls
        return cls

    return decorator


def get_job_class(tag: str) -> type:
    try:
        return _REGISTRY[tag]
    except KeyError:
        raise JobRegistryError(f"Unknown job kind '{tag}'", tag=tag) from None


def build_job(tag: str, arguments: list | None = None):
    job_cls = get_job_class(tag)
    try:
        return job_cls(*(arguments or []))
    except TypeError as exc:
        raise JobRegistryError(f"Bad arguments for job '{tag}': {exc}", tag=tag, arguments=arguments) from exc


def registered_tags() -> list[str]:
    return sorted(_REGISTRY)
