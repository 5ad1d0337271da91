from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Type

from pydantic import BaseModel

from calcrm.models.branch import Branch
from calcrm.models.certificate import Certificate
from calcrm.models.company import Company
from calcrm.models.equipment import Equipment
from calcrm.models.job import Job
from calcrm.models.quote import Quote
from calcrm.schemas.entities import (
    BranchChanges,
    BranchCreate,
    CertificateChanges,
    CertificateCreate,
    CompanyChanges,
    CompanyCreate,
    EquipmentChanges,
    EquipmentCreate,
    JobChanges,
    JobCreate,
    QuoteChanges,
    QuoteCreate,
)


@dataclass(frozen=True)
class EntityConfig:
    entity_type: str
    model: Any
    create_schema: Type[BaseModel]
    changes_schema: Type[BaseModel]
    label: str


# Versioned business entities, keyed by the tag used in lock/presence references.
ENTITY_CONFIG: dict[str, EntityConfig] = {
    cfg.entity_type: cfg
    for cfg in (
        EntityConfig("company", Company, CompanyCreate, CompanyChanges, "Company"),
        EntityConfig("branch", Branch, BranchCreate, BranchChanges, "Branch"),
        EntityConfig("equipment", Equipment, EquipmentCreate, EquipmentChanges, "Equipment"),
        EntityConfig("job", Job, JobCreate, JobChanges, "Job"),
        EntityConfig("quote", Quote, QuoteCreate, QuoteChanges, "Quote"),
        EntityConfig("certificate", Certificate, CertificateCreate, CertificateChanges, "Certificate"),
    )
}


class UnknownEntityType(LookupError):
    pass


def get_entity_config(entity_type: str) -> EntityConfig:
    key = (entity_type or "").strip().lower()
    cfg = ENTITY_CONFIG.get(key)
    if cfg is None:
        raise UnknownEntityType(f"Unknown entity type '{entity_type}'.")
    return cfg
