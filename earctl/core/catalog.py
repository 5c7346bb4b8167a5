"""Model catalog loading and device-model resolution.

The packaged catalog (``earctl/catalog/models.yaml``) maps SKUs to models and
model bases to capability sets. A user file at
``$XDG_CONFIG_HOME/earctl/models.yaml`` may add or override entries.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

from earctl.core.documents import load_validator, read_yaml, validate
from earctl.core.errors import CatalogLoadError, CatalogValidationError, UnknownModelError
from earctl.core.model import Capability, DeviceModel

UNKNOWN_BASE = "UNKNOWN"
LOGGER = logging.getLogger(__name__)

# Factory test units report this serial.
_TEST_SERIAL = "12345678901234567"


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    base: str


@dataclass(frozen=True)
class ModelCatalog:
    bases: dict[str, tuple[Capability, ...]]
    models: dict[str, ModelInfo]
    skus: dict[str, str]
    warnings: tuple[str, ...] = ()

    def capabilities_for(self, base: str) -> tuple[Capability, ...]:
        return self.bases.get(base, self.bases[UNKNOWN_BASE])

    def unknown_model(self, serial_number: str | None = None, sku: str | None = None) -> DeviceModel:
        return DeviceModel(
            base=UNKNOWN_BASE,
            capabilities=self.capabilities_for(UNKNOWN_BASE),
            sku=sku,
            serial_number=serial_number,
        )

    def model_for_id(self, model_id: str) -> DeviceModel:
        info = self.models.get(model_id)
        if info is None:
            raise UnknownModelError(f"Unknown model id '{model_id}'")
        return self._describe(info)

    def model_for_sku(self, sku: str, serial_number: str | None = None) -> DeviceModel:
        model_id = self.skus.get(sku)
        if model_id is None:
            raise UnknownModelError(f"Unknown SKU '{sku}'")
        return self._describe(self.models[model_id], sku=sku, serial_number=serial_number)

    def model_for_base(self, base: str) -> DeviceModel:
        normalized = base.strip().upper()
        if normalized not in self.bases:
            known = ", ".join(sorted(self.bases))
            raise UnknownModelError(f"Unknown model base '{base}'. Known: {known}")
        return DeviceModel(base=normalized, capabilities=self.bases[normalized])

    def model_for_serial(self, serial_number: str | None) -> DeviceModel:
        """Resolve a serial number to a model, degrading to the UNKNOWN base."""
        if not serial_number:
            return self.unknown_model()
        sku = derive_sku_from_serial(serial_number)
        if sku is None or sku not in self.skus:
            LOGGER.warning("Could not map serial %s (sku=%s) to a known model", serial_number, sku)
            return self.unknown_model(serial_number=serial_number, sku=sku)
        return self.model_for_sku(sku, serial_number=serial_number)

    def _describe(self, info: ModelInfo, *, sku: str | None = None, serial_number: str | None = None) -> DeviceModel:
        return DeviceModel(
            base=info.base,
            capabilities=self.capabilities_for(info.base),
            model_id=info.id,
            name=info.name,
            sku=sku,
            serial_number=serial_number,
        )


def derive_sku_from_serial(serial: str) -> str | None:
    if serial == _TEST_SERIAL:
        return "01"
    if len(serial) < 6:
        return None
    head = serial[:2]
    if head == "MA":
        year = serial[6:8]
        if year in ("22", "23"):
            return "14"
        if year == "24":
            return "11200005"
        return None
    if head in ("SH", "13"):
        return serial[4:6]
    return None


def _user_catalog_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "earctl/models.yaml"


def _packaged_catalog_path() -> Traversable:
    return resources.files("earctl.catalog").joinpath("models.yaml")


def _ordered_capabilities(names: list[str]) -> tuple[Capability, ...]:
    wanted = {Capability(name) for name in names}
    return tuple(capability for capability in Capability if capability in wanted)


def _read_document(path: Path | Traversable, validator: Any) -> dict[str, Any]:
    doc = read_yaml(path, load_error=CatalogLoadError, validation_error=CatalogValidationError)
    validate(doc, validator, path, error=CatalogValidationError)
    return doc


def _merge(
    target: dict[str, Any],
    entries: dict[str, Any],
    *,
    section: str,
    warnings: list[str] | None,
) -> None:
    for key, value in entries.items():
        if warnings is not None and key in target:
            warning = f"User catalog entry '{section}.{key}' overrides packaged entry"
            LOGGER.warning(warning)
            warnings.append(warning)
        target[key] = value


def load_catalog() -> ModelCatalog:
    validator = load_validator("catalog.schema.json")
    bases: dict[str, Any] = {}
    models: dict[str, Any] = {}
    skus: dict[str, Any] = {}
    warnings: list[str] = []

    packaged = _packaged_catalog_path()
    doc = _read_document(packaged, validator)
    _merge(bases, doc.get("bases", {}), section="bases", warnings=None)
    _merge(models, doc.get("models", {}), section="models", warnings=None)
    _merge(skus, doc.get("skus", {}), section="skus", warnings=None)

    user_path = _user_catalog_path()
    if user_path.is_file():
        user_doc = _read_document(user_path, validator)
        _merge(bases, user_doc.get("bases", {}), section="bases", warnings=warnings)
        _merge(models, user_doc.get("models", {}), section="models", warnings=warnings)
        _merge(skus, user_doc.get("skus", {}), section="skus", warnings=warnings)

    if UNKNOWN_BASE not in bases:
        raise CatalogValidationError(f"Catalog must define the '{UNKNOWN_BASE}' base")
    for model_id, entry in models.items():
        if entry["base"] not in bases:
            raise CatalogValidationError(f"Model '{model_id}' references undefined base '{entry['base']}'")
    for sku, model_id in skus.items():
        if model_id not in models:
            raise CatalogValidationError(f"SKU '{sku}' references undefined model '{model_id}'")

    return ModelCatalog(
        bases={base: _ordered_capabilities(names) for base, names in bases.items()},
        models={
            model_id: ModelInfo(id=model_id, name=entry["name"], base=entry["base"])
            for model_id, entry in models.items()
        },
        skus=dict(skus),
        warnings=tuple(warnings),
    )
