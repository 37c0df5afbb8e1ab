"""
Fixtures para tests del ETL: feeds Atom de ejemplo (formato PLACSP) y constructores de ZIP.
Los tests que necesitan red se marcan como integration y quedan fuera por defecto.
"""

import zipfile
from pathlib import Path

import pytest

NS = (
    'xmlns="http://www.w3.org/2005/Atom" '
    'xmlns:cac="urn:dgpe:names:draft:codice:schema:xsd:CommonAggregateComponents-2" '
    'xmlns:cbc="urn:dgpe:names:draft:codice:schema:xsd:CommonBasicComponents-2" '
    'xmlns:cac-place-ext="urn:dgpe:names:draft:codice-place-ext:schema:xsd:CommonAggregateComponents-2" '
    'xmlns:cbc-place-ext="urn:dgpe:names:draft:codice-place-ext:schema:xsd:CommonBasicComponents-2"'
)

ENTRY_SUPPLIES = """
  <entry>
    <id>https://contrataciondelestado.es/sindicacion/licitacionesPerfilContratante/100</id>
    <link href="https://contrataciondelestado.es/wps/poc?uri=deeplink:detalle_licitacion&amp;idEvl=abc100"/>
    <summary type="text">Id licitación: 2023/001; Órgano de Contratación: Ayuntamiento de Prueba</summary>
    <title>Suministro de material de oficina</title>
    <updated>2023-05-10T12:00:00.000+02:00</updated>
    <cac-place-ext:ContractFolderStatus>
      <cbc:ContractFolderID>2023/001</cbc:ContractFolderID>
      <cbc-place-ext:ContractFolderStatusCode listURI="https://contrataciondelestado.es/codice/cl/2.04/SyndicationContractFolderStatusCode-2.04.gc">ADJ</cbc-place-ext:ContractFolderStatusCode>
      <cac-place-ext:LocatedContractingParty>
        <cbc:ContractingPartyTypeCode listURI="urn:ContractingAuthorityCode">3</cbc:ContractingPartyTypeCode>
        <cbc:ActivityCode listURI="urn:ContractingAuthorityActivityCode">1</cbc:ActivityCode>
        <cac:Party>
          <cbc:WebsiteURI>https://www.ayto-prueba.es</cbc:WebsiteURI>
          <cac:PartyName>
            <cbc:Name>Ayuntamiento de Prueba</cbc:Name>
          </cac:PartyName>
          <cac:PostalAddress>
            <cbc:CityName>Madrid</cbc:CityName>
            <cbc:PostalZone>28001</cbc:PostalZone>
            <cac:Country>
              <cbc:IdentificationCode listURI="urn:CountryIdentificationCode">ES</cbc:IdentificationCode>
              <cbc:Name>España</cbc:Name>
            </cac:Country>
          </cac:PostalAddress>
        </cac:Party>
      </cac-place-ext:LocatedContractingParty>
      <cac:ProcurementProject>
        <cbc:Name>Suministro de material de oficina</cbc:Name>
        <cbc:TypeCode listURI="urn:ContractCode">1</cbc:TypeCode>
        <cbc:SubTypeCode listURI="urn:GoodsContractCode">2</cbc:SubTypeCode>
        <cac:BudgetAmount>
          <cbc:TotalAmount currencyID="EUR">12100</cbc:TotalAmount>
          <cbc:TaxExclusiveAmount currencyID="EUR">10000</cbc:TaxExclusiveAmount>
        </cac:BudgetAmount>
        <cac:RequiredCommodityClassification>
          <cbc:ItemClassificationCode listURI="urn:CPV2008">30192000</cbc:ItemClassificationCode>
        </cac:RequiredCommodityClassification>
        <cac:RequiredCommodityClassification>
          <cbc:ItemClassificationCode listURI="urn:CPV2008">30197000</cbc:ItemClassificationCode>
        </cac:RequiredCommodityClassification>
        <cac:RealizedLocation>
          <cac:Address>
            <cac:Country>
              <cbc:IdentificationCode listURI="urn:CountryIdentificationCode">ES</cbc:IdentificationCode>
            </cac:Country>
          </cac:Address>
        </cac:RealizedLocation>
      </cac:ProcurementProject>
      <cac:TenderResult>
        <cbc:ResultCode listURI="urn:TenderResultCode">8</cbc:ResultCode>
        <cbc:Description>Adjudicado</cbc:Description>
        <cbc:AwardDate>2023-06-01</cbc:AwardDate>
        <cbc:SMEAwardedIndicator>true</cbc:SMEAwardedIndicator>
        <cac:WinningParty>
          <cac:PartyName>
            <cbc:Name>Papelería Ejemplo SL</cbc:Name>
          </cac:PartyName>
        </cac:WinningParty>
        <cac:AwardedTenderedProject>
          <cac:LegalMonetaryTotal>
            <cbc:TaxExclusiveAmount currencyID="EUR">9000</cbc:TaxExclusiveAmount>
            <cbc:PayableAmount currencyID="EUR">10890</cbc:PayableAmount>
          </cac:LegalMonetaryTotal>
        </cac:AwardedTenderedProject>
      </cac:TenderResult>
      <cac:TenderingTerms>
        <cac:AwardingTerms>
          <cac:AwardingCriteria>
            <cbc:AwardingCriteriaTypeCode listURI="urn:AwardingCriteriaTypeCode">OBJ</cbc:AwardingCriteriaTypeCode>
          </cac:AwardingCriteria>
        </cac:AwardingTerms>
        <cbc:FundingProgramCode listURI="urn:FundingProgramCode">EU</cbc:FundingProgramCode>
      </cac:TenderingTerms>
      <cac:TenderingProcess>
        <cbc:ProcedureCode listURI="urn:SyndicationTenderingProcessCode">1</cbc:ProcedureCode>
        <cbc:UrgencyCode listURI="urn:DiligenceTypeCode">1</cbc:UrgencyCode>
        <cac:TenderSubmissionDeadlinePeriod>
          <cbc:EndDate>2023-05-30</cbc:EndDate>
        </cac:TenderSubmissionDeadlinePeriod>
      </cac:TenderingProcess>
    </cac-place-ext:ContractFolderStatus>
  </entry>
"""

ENTRY_LOTS = """
  <entry>
    <id>https://contrataciondelestado.es/sindicacion/licitacionesPerfilContratante/200</id>
    <link href="https://contrataciondelestado.es/wps/poc?uri=deeplink:detalle_licitacion&amp;idEvl=abc200"/>
    <title>Servicio de limpieza por lotes</title>
    <updated>2023-07-01T09:30:00.000+02:00</updated>
    <cac-place-ext:ContractFolderStatus>
      <cbc:ContractFolderID>2023/002</cbc:ContractFolderID>
      <cbc-place-ext:ContractFolderStatusCode listURI="urn:status">RES</cbc-place-ext:ContractFolderStatusCode>
      <cac:ProcurementProject>
        <cbc:Name>Servicio de limpieza</cbc:Name>
        <cbc:TypeCode listURI="urn:ContractCode">2</cbc:TypeCode>
      </cac:ProcurementProject>
      <cac:ProcurementProjectLot>
        <cbc:ID schemeName="ID_LOTE">1</cbc:ID>
        <cac:ProcurementProject>
          <cbc:Name>Lote 1: edificios</cbc:Name>
          <cac:BudgetAmount>
            <cbc:TotalAmount currencyID="EUR">5000</cbc:TotalAmount>
          </cac:BudgetAmount>
        </cac:ProcurementProject>
      </cac:ProcurementProjectLot>
      <cac:ProcurementProjectLot>
        <cbc:ID schemeName="ID_LOTE">2</cbc:ID>
        <cac:ProcurementProject>
          <cbc:Name>Lote 2: colegios</cbc:Name>
          <cac:BudgetAmount>
            <cbc:TotalAmount currencyID="EUR">7000</cbc:TotalAmount>
          </cac:BudgetAmount>
        </cac:ProcurementProject>
      </cac:ProcurementProjectLot>
      <cac:TenderResult>
        <cbc:ResultCode listURI="urn:TenderResultCode">8</cbc:ResultCode>
        <cac:AwardedTenderedProject>
          <cbc:ProcurementProjectLotID>1</cbc:ProcurementProjectLotID>
        </cac:AwardedTenderedProject>
      </cac:TenderResult>
      <cac:TenderResult>
        <cbc:ResultCode listURI="urn:TenderResultCode">9</cbc:ResultCode>
        <cac:AwardedTenderedProject>
          <cbc:ProcurementProjectLotID>1</cbc:ProcurementProjectLotID>
        </cac:AwardedTenderedProject>
      </cac:TenderResult>
      <cac:TenderResult>
        <cbc:ResultCode listURI="urn:TenderResultCode">8</cbc:ResultCode>
        <cac:AwardedTenderedProject>
          <cbc:ProcurementProjectLotID>2</cbc:ProcurementProjectLotID>
        </cac:AwardedTenderedProject>
      </cac:TenderResult>
    </cac-place-ext:ContractFolderStatus>
  </entry>
"""


def make_feed(*entries: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        f"<feed {NS}>\n"
        "  <title>Licitaciones publicadas</title>\n"
        "  <updated>2023-07-02T00:00:00.000+02:00</updated>\n"
        + "".join(entries)
        + "</feed>\n"
    )


def make_zip(path: Path, members: dict[str, bytes]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, data in members.items():
            zf.writestr(name, data)
    return path


@pytest.fixture
def sample_feed() -> str:
    """Feed con dos entradas: una con todos los bloques, otra con 2 lotes y 3 resultados."""
    return make_feed(ENTRY_SUPPLIES, ENTRY_LOTS)


@pytest.fixture
def sample_feed_bytes(sample_feed) -> bytes:
    return sample_feed.encode("utf-8")


@pytest.fixture
def period_zip(tmp_path, sample_feed_bytes):
    """Construye {tmp}/download/{periodo}.zip con miembros dados (por defecto, un feed válido)."""

    def _build(period: str = "202301", members: dict[str, bytes] = None) -> Path:
        if members is None:
            members = {f"licitacionesPerfilContratante_{period}.atom": sample_feed_bytes}
        return make_zip(tmp_path / "download" / f"{period}.zip", members)

    return _build
