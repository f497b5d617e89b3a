import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from .registry import default_config_for
from .schemas import InstanceConfig, ModelRole


logger = logging.getLogger("uvicorn.error")

SCHEMA_VERSION = 2
BOOTSTRAP_ROLES = (ModelRole.MODEL_ROUTER, ModelRole.CODE_ASSISTANT)


class DuplicateInstanceError(ValueError):
    pass


class UnknownInstanceError(KeyError):
    pass


def migrate_payload(payload: Any) -> Dict[str, InstanceConfig]:
    """Validate a persisted blob and upgrade older layouts.

    Version 1 files are the bare ``{id: fields}`` mapping with no envelope.
    Raises ``ValueError`` (or a pydantic ``ValidationError``) when unreadable.
    """
    if not isinstance(payload, dict):
        raise ValueError("persisted instances must be a JSON object")
    if "version" in payload:
        version = payload.get("version")
        if version != SCHEMA_VERSION:
            raise ValueError(f"unsupported instances schema version: {version!r}")
        raw = payload.get("instances")
        if not isinstance(raw, dict):
            raise ValueError("missing instances mapping")
    else:
        raw = payload
    configs: Dict[str, InstanceConfig] = {}
    for instance_id, fields in raw.items():
        if not isinstance(fields, dict):
            raise ValueError(f"instance {instance_id!r} is not an object")
        configs[str(instance_id)] = InstanceConfig.from_persisted(str(instance_id), fields)
    return configs


class InstanceStore:
    def __init__(self, path: Path, on_change: Optional[Callable[[], None]] = None) -> None:
        self.path = Path(path)
        self.on_change = on_change
        self._configs: Dict[str, InstanceConfig] = {}
        self._retired_ids: Set[str] = set()

    def load(self) -> Dict[str, InstanceConfig]:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
            configs = migrate_payload(payload)
        except FileNotFoundError:
            self._bootstrap()
        except Exception as exc:
            logger.warning("Unreadable instance config %s (%s); restoring defaults", self.path, exc)
            self._set_aside_corrupt()
            self._bootstrap()
        else:
            self._configs = configs
            if payload.get("version") != SCHEMA_VERSION:
                logger.info("Migrated %s to schema version %s", self.path, SCHEMA_VERSION)
                self.save()
        self._notify()
        return self.snapshot()

    def _bootstrap(self) -> None:
        defaults = [default_config_for(role) for role in BOOTSTRAP_ROLES]
        self._configs = {config.id: config for config in defaults}
        try:
            self.save()
        except OSError as exc:
            logger.warning("Could not write default instances to %s (%s); keeping them in memory", self.path, exc)

    def _set_aside_corrupt(self) -> None:
        try:
            self.path.replace(self.path.with_name(self.path.name + ".corrupt"))
        except OSError:
            pass

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": SCHEMA_VERSION,
            "instances": {key: config.to_persisted() for key, config in self._configs.items()},
        }
        fd, tmp_name = tempfile.mkstemp(prefix=self.path.name + ".", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, ensure_ascii=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change()

    def add(self, config: InstanceConfig) -> InstanceConfig:
        if config.id in self._configs or config.id in self._retired_ids:
            raise DuplicateInstanceError(f"instance id already used: {config.id}")
        self._configs[config.id] = config.model_copy(deep=True)
        self.save()
        self._notify()
        return config.model_copy(deep=True)

    def update(self, config: InstanceConfig) -> InstanceConfig:
        if config.id not in self._configs:
            raise UnknownInstanceError(config.id)
        self._configs[config.id] = config.model_copy(deep=True)
        self.save()
        self._notify()
        return config.model_copy(deep=True)

    def remove(self, instance_id: str) -> Optional[InstanceConfig]:
        removed = self._configs.pop(instance_id, None)
        if removed is None:
            return None
        self._retired_ids.add(instance_id)
        self.save()
        self._notify()
        return removed

    def get(self, instance_id: str) -> Optional[InstanceConfig]:
        config = self._configs.get(instance_id)
        return config.model_copy(deep=True) if config else None

    def get_by_role(self, role: ModelRole) -> Optional[InstanceConfig]:
        role = ModelRole(role)
        for config in self._configs.values():
            if config.role == role and config.enabled:
                return config.model_copy(deep=True)
        return None

    def all(self) -> List[InstanceConfig]:
        return [config.model_copy(deep=True) for config in self._configs.values()]

    def snapshot(self) -> Dict[str, InstanceConfig]:
        return {key: config.model_copy(deep=True) for key, config in self._configs.items()}

    def __contains__(self, instance_id: object) -> bool:
        return instance_id in self._configs

    def __len__(self) -> int:
        return len(self._configs)
