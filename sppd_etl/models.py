"""
Modelos del pipeline: tipo de contratación y registro aplanado por entrada Atom.

Los nombres de campo de las dataclasses coinciden con las columnas del esquema Parquet
(ver parquet_writer.RECORD_SCHEMA); dataclasses.asdict produce directamente la fila.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from sppd_etl.errors import ConfigurationError

MINOR_CONTRACTS_URL = (
    "https://www.hacienda.gob.es/es-es/gobiernoabierto/datos%20abiertos/paginas/contratosmenores.aspx"
)
PUBLIC_TENDERS_URL = (
    "https://www.hacienda.gob.es/es-ES/GobiernoAbierto/Datos%20Abiertos/Paginas/LicitacionesContratante.aspx"
)


class ProcurementType(Enum):
    PUBLIC_TENDERS = "pt"
    MINOR_CONTRACTS = "mc"

    @classmethod
    def from_alias(cls, raw: Optional[str]) -> "ProcurementType":
        """Resuelve alias (mayúsculas/espacios indiferentes). Un alias desconocido es un error."""
        key = (raw or "").strip().lower()
        try:
            return PROCUREMENT_TYPE_ALIASES[key]
        except KeyError:
            valid = ", ".join(sorted(PROCUREMENT_TYPE_ALIASES))
            raise ConfigurationError(
                f"Tipo de contratación desconocido: {raw!r}. Valores válidos: {valid}"
            ) from None

    @property
    def key(self) -> str:
        return self.value

    @property
    def display_name(self) -> str:
        return "Contratos menores" if self is ProcurementType.MINOR_CONTRACTS else "Licitaciones"

    @property
    def landing_url(self) -> str:
        if self is ProcurementType.MINOR_CONTRACTS:
            return MINOR_CONTRACTS_URL
        return PUBLIC_TENDERS_URL


PROCUREMENT_TYPE_ALIASES = {
    "mc": ProcurementType.MINOR_CONTRACTS,
    "min": ProcurementType.MINOR_CONTRACTS,
    "minor-contracts": ProcurementType.MINOR_CONTRACTS,
    "pt": ProcurementType.PUBLIC_TENDERS,
    "pub": ProcurementType.PUBLIC_TENDERS,
    "public-tenders": ProcurementType.PUBLIC_TENDERS,
}


@dataclass
class CodeValue:
    code: Optional[str] = None
    list_uri: Optional[str] = None


@dataclass
class ContractingParty:
    name: Optional[str] = None
    website: Optional[str] = None
    type_code: Optional[str] = None
    type_code_list_uri: Optional[str] = None
    activity_code: Optional[str] = None
    activity_code_list_uri: Optional[str] = None
    city: Optional[str] = None
    zip: Optional[str] = None
    country_code: Optional[str] = None
    country_code_list_uri: Optional[str] = None


@dataclass
class Project:
    name: Optional[str] = None
    type_code: Optional[str] = None
    type_code_list_uri: Optional[str] = None
    sub_type_code: Optional[str] = None
    sub_type_code_list_uri: Optional[str] = None
    total_amount: Optional[str] = None
    total_currency: Optional[str] = None
    tax_exclusive_amount: Optional[str] = None
    tax_exclusive_currency: Optional[str] = None
    cpv_code: Optional[str] = None
    cpv_code_list_uri: Optional[str] = None
    country_code: Optional[str] = None
    country_code_list_uri: Optional[str] = None


@dataclass
class ProjectLot(Project):
    id: Optional[str] = None


@dataclass
class TenderResult:
    result_id: Optional[int] = None
    result_lot_id: Optional[str] = None
    code: Optional[str] = None
    code_list_uri: Optional[str] = None
    description: Optional[str] = None
    winning_party: Optional[str] = None
    sme_awarded_indicator: Optional[str] = None
    award_date: Optional[str] = None
    tax_exclusive_amount: Optional[str] = None
    tax_exclusive_currency: Optional[str] = None
    payable_amount: Optional[str] = None
    payable_currency: Optional[str] = None


@dataclass
class Process:
    end_date: Optional[str] = None
    procedure_code: Optional[str] = None
    procedure_code_list_uri: Optional[str] = None
    urgency_code: Optional[str] = None
    urgency_code_list_uri: Optional[str] = None


@dataclass
class FeedEntry:
    id: Optional[str] = None
    title: Optional[str] = None
    link: Optional[str] = None
    summary: Optional[str] = None
    updated: Optional[str] = None


@dataclass
class ContractFolderRecord:
    """Unidad de salida: una fila por <entry> con su ContractFolderStatus descompuesto."""

    id: Optional[str] = None
    title: Optional[str] = None
    link: Optional[str] = None
    summary: Optional[str] = None
    updated: Optional[str] = None
    status: CodeValue = field(default_factory=CodeValue)
    contract_id: Optional[str] = None
    contracting_party: ContractingParty = field(default_factory=ContractingParty)
    project: Project = field(default_factory=Project)
    project_lots: list[ProjectLot] = field(default_factory=list)
    tender_results: list[TenderResult] = field(default_factory=list)
    terms_funding_program: CodeValue = field(default_factory=CodeValue)
    terms_award_criteria: CodeValue = field(default_factory=CodeValue)
    process: Process = field(default_factory=Process)
    cfs_raw_xml: Optional[str] = None

    def to_row(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ContractFolderRecord":
        return cls(
            id=row.get("id"),
            title=row.get("title"),
            link=row.get("link"),
            summary=row.get("summary"),
            updated=row.get("updated"),
            status=CodeValue(**(row.get("status") or {})),
            contract_id=row.get("contract_id"),
            contracting_party=ContractingParty(**(row.get("contracting_party") or {})),
            project=Project(**(row.get("project") or {})),
            project_lots=[ProjectLot(**lot) for lot in row.get("project_lots") or []],
            tender_results=[TenderResult(**r) for r in row.get("tender_results") or []],
            terms_funding_program=CodeValue(**(row.get("terms_funding_program") or {})),
            terms_award_criteria=CodeValue(**(row.get("terms_award_criteria") or {})),
            process=Process(**(row.get("process") or {})),
            cfs_raw_xml=row.get("cfs_raw_xml"),
        )
