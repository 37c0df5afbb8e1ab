"""
Descomposición en streaming de feeds Atom de PLACSP.

Cada <entry> produce un ContractFolderRecord; su <cac-place-ext:ContractFolderStatus> se recorre
con una máquina de estados sobre eventos expat (el motor de xml.etree), sin construir árbol.
El contexto de cada elemento sale de la pila de nombres locales abiertos, así un <cbc:Name>
bajo ProcurementProject se distingue del de un ProcurementProjectLot o de un PartyName.

Reglas de mapeo:
- Elementos repetidos en el mismo ámbito se concatenan con "_" en orden de documento.
- Un elemento vacío (<X/> o <X></X>) deja el campo a "" si no tenía valor.
- result_id: contador local de cada ContractFolderStatus, +1 por cada <TenderResult> (1-based).
- result_lot_id: un resultado con N ProcurementProjectLotID se repite N veces; sin lote, "0".
"""

import logging
import xml.parsers.expat
from dataclasses import replace
from pathlib import Path
from typing import Any, Optional

from sppd_etl.errors import ParseError
from sppd_etl.models import (
    ContractFolderRecord,
    ProjectLot,
    TenderResult,
)

logger = logging.getLogger("sppd_etl.xml_parser")

CONTRACT_FOLDER_STATUS = "ContractFolderStatus"
ATOM_TEXT_FIELDS = ("id", "title", "summary", "updated")
RESULT_LOT_SENTINEL = "0"

LIST_URI = "listURI"
CURRENCY_ID = "currencyID"

# (objeto destino, atributo, (atributo XML, atributo destino) opcional)
FieldTarget = tuple[Any, str, Optional[tuple[str, str]]]

_LOT_ID = object()


def local_name(qname: str) -> str:
    return qname.rpartition(":")[2]


class ContractFolderScope:
    """Estado de un <ContractFolderStatus> en curso. Vive lo que dura su subárbol."""

    def __init__(self, start_index: int = 0):
        self.start_index = start_index
        self.record = ContractFolderRecord()
        # Nombres locales abiertos por debajo de ContractFolderStatus
        self.path: list[str] = []
        self.active: Optional[tuple[Any, str]] = None
        self.result_counter = 0
        self.current_lot: Optional[ProjectLot] = None
        self.current_result: Optional[TenderResult] = None
        self.result_lot_ids: list[str] = []
        self.lot_id_buffer: list[str] = []

    # ---- eventos ----

    def start(self, name: str, attrs: dict[str, str]) -> None:
        local = local_name(name)
        self.path.append(local)
        ancestors = self.path[:-1]
        self.active = None

        if local == "ProcurementProjectLot":
            self.current_lot = ProjectLot()
            return
        if local == "TenderResult":
            self._start_result()
            return
        if local == "ProcurementProjectLotID" and "TenderResult" in ancestors:
            self.lot_id_buffer = []
            self.active = (_LOT_ID, "")
            return

        target = self._resolve(local, attrs, ancestors)
        if target is None:
            return
        obj, attr, extra = target
        current = getattr(obj, attr)
        if current is None:
            setattr(obj, attr, "")
        elif current:
            setattr(obj, attr, current + "_")
        if extra is not None:
            xml_attr, extra_attr = extra
            value = attrs.get(xml_attr)
            if value is not None:
                setattr(obj, extra_attr, value)
        self.active = (obj, attr)

    def text(self, data: str) -> None:
        if self.active is None:
            return
        data = data.strip()
        if not data:
            return
        obj, attr = self.active
        if obj is _LOT_ID:
            self.lot_id_buffer.append(data)
            return
        setattr(obj, attr, getattr(obj, attr) + data)

    def end(self, name: str) -> None:
        local = local_name(name)
        if self.active is not None and self.active[0] is _LOT_ID:
            lot_id = "".join(self.lot_id_buffer)
            if lot_id:
                self.result_lot_ids.append(lot_id)
            self.lot_id_buffer = []
        self.active = None
        if local == "ProcurementProjectLot" and self.current_lot is not None:
            self.record.project_lots.append(self.current_lot)
            self.current_lot = None
        elif local == "TenderResult":
            self._finish_result()
        if self.path:
            self.path.pop()

    def finish(self, raw_xml: Optional[str] = None) -> ContractFolderRecord:
        if self.current_lot is not None:
            self.record.project_lots.append(self.current_lot)
            self.current_lot = None
        self._finish_result()
        self.record.cfs_raw_xml = raw_xml
        return self.record

    # ---- resultados ----

    def _start_result(self) -> None:
        self.result_counter += 1
        self.current_result = TenderResult(result_id=self.result_counter)
        self.result_lot_ids = []

    def _finish_result(self) -> None:
        row = self.current_result
        if row is None:
            return
        if not self.result_lot_ids:
            row.result_lot_id = RESULT_LOT_SENTINEL
            self.record.tender_results.append(row)
        else:
            for lot_id in self.result_lot_ids:
                self.record.tender_results.append(replace(row, result_lot_id=lot_id))
        self.current_result = None
        self.result_lot_ids = []

    # ---- mapeo elemento -> campo ----

    def _resolve(self, local: str, attrs: dict[str, str], ancestors: list[str]) -> Optional[FieldTarget]:
        rec = self.record
        if local == "ContractFolderStatusCode":
            return rec.status, "code", (LIST_URI, "list_uri")
        if local == "ContractFolderID":
            return rec, "contract_id", None

        if "ProcurementProjectLot" in ancestors:
            lot = self.current_lot
            if lot is None:
                return None
            if local == "ID" and attrs.get("schemeName") == "ID_LOTE":
                return lot, "id", None
            return self._project_field(lot, local, ancestors)

        if "ProcurementProject" in ancestors:
            return self._project_field(rec.project, local, ancestors)

        if "LocatedContractingParty" in ancestors:
            return self._party_field(local, ancestors)

        if "TenderResult" in ancestors and self.current_result is not None:
            return self._result_field(self.current_result, local, ancestors)

        if "TenderingProcess" in ancestors:
            process = rec.process
            if local == "EndDate" and "TenderSubmissionDeadlinePeriod" in ancestors:
                return process, "end_date", None
            if local == "ProcedureCode":
                return process, "procedure_code", (LIST_URI, "procedure_code_list_uri")
            if local == "UrgencyCode":
                return process, "urgency_code", (LIST_URI, "urgency_code_list_uri")
            return None

        if "TenderingTerms" in ancestors:
            if local == "FundingProgramCode":
                return rec.terms_funding_program, "code", (LIST_URI, "list_uri")
            if (
                local == "AwardingCriteriaTypeCode"
                and "AwardingTerms" in ancestors
                and "AwardingCriteria" in ancestors
            ):
                return rec.terms_award_criteria, "code", (LIST_URI, "list_uri")
        return None

    @staticmethod
    def _project_field(obj, local: str, ancestors: list[str]) -> Optional[FieldTarget]:
        in_country = "Country" in ancestors
        if local == "Name" and obj.name is None and not in_country:
            return obj, "name", None
        if local == "TypeCode":
            return obj, "type_code", (LIST_URI, "type_code_list_uri")
        if local == "SubTypeCode":
            return obj, "sub_type_code", (LIST_URI, "sub_type_code_list_uri")
        if "BudgetAmount" in ancestors:
            if local == "TotalAmount":
                return obj, "total_amount", (CURRENCY_ID, "total_currency")
            if local == "TaxExclusiveAmount":
                return obj, "tax_exclusive_amount", (CURRENCY_ID, "tax_exclusive_currency")
        if local == "ItemClassificationCode" and "RequiredCommodityClassification" in ancestors:
            return obj, "cpv_code", (LIST_URI, "cpv_code_list_uri")
        if local == "IdentificationCode" and in_country:
            return obj, "country_code", (LIST_URI, "country_code_list_uri")
        return None

    def _party_field(self, local: str, ancestors: list[str]) -> Optional[FieldTarget]:
        party = self.record.contracting_party
        if local == "ContractingPartyTypeCode":
            return party, "type_code", (LIST_URI, "type_code_list_uri")
        if local == "ActivityCode":
            return party, "activity_code", (LIST_URI, "activity_code_list_uri")
        if "Party" not in ancestors:
            return None
        if local == "WebsiteURI":
            return party, "website", None
        if local == "Name" and "PartyName" in ancestors:
            return party, "name", None
        if "PostalAddress" in ancestors:
            if local == "CityName":
                return party, "city", None
            if local == "PostalZone":
                return party, "zip", None
            if local == "IdentificationCode" and "Country" in ancestors:
                return party, "country_code", (LIST_URI, "country_code_list_uri")
        return None

    @staticmethod
    def _result_field(row: TenderResult, local: str, ancestors: list[str]) -> Optional[FieldTarget]:
        if "LegalMonetaryTotal" in ancestors and "AwardedTenderedProject" in ancestors:
            if local == "TaxExclusiveAmount":
                return row, "tax_exclusive_amount", (CURRENCY_ID, "tax_exclusive_currency")
            if local == "PayableAmount":
                return row, "payable_amount", (CURRENCY_ID, "payable_currency")
            return None
        if local == "Name" and "WinningParty" in ancestors and "PartyName" in ancestors:
            return row, "winning_party", None
        if local == "ResultCode":
            return row, "code", (LIST_URI, "code_list_uri")
        if local == "Description":
            return row, "description", None
        if local == "SMEAwardedIndicator":
            return row, "sme_awarded_indicator", None
        if local == "AwardDate":
            return row, "award_date", None
        return None


class FeedHandler:
    """Recibe los eventos expat de un documento Atom completo y acumula los registros."""

    def __init__(self, data: bytes, keep_raw_xml: bool = False):
        self.data = data
        self.keep_raw_xml = keep_raw_xml
        self.encoding = "utf-8"
        self.records: list[ContractFolderRecord] = []
        self.stack: list[str] = []
        self.entry: Optional[dict[str, Optional[str]]] = None
        self.entry_field: Optional[str] = None
        self.scope: Optional[ContractFolderScope] = None
        self.folder: Optional[ContractFolderRecord] = None
        self.parser = xml.parsers.expat.ParserCreate()
        self.parser.buffer_text = True
        self.parser.XmlDeclHandler = self._xml_decl
        self.parser.StartElementHandler = self._start
        self.parser.EndElementHandler = self._end
        self.parser.CharacterDataHandler = self._text

    def run(self) -> list[ContractFolderRecord]:
        self.parser.Parse(self.data, True)
        return self.records

    def _xml_decl(self, version, encoding, standalone) -> None:
        if encoding:
            self.encoding = encoding

    def _start(self, name: str, attrs: dict[str, str]) -> None:
        local = local_name(name)
        if self.scope is not None:
            self.scope.start(name, attrs)
            self.stack.append(local)
            return

        parent = self.stack[-1] if self.stack else None
        self.stack.append(local)
        self.entry_field = None
        if local == "entry":
            self.entry = {}
            self.folder = None
        elif self.entry is not None and local == CONTRACT_FOLDER_STATUS:
            self.scope = ContractFolderScope(self.parser.CurrentByteIndex)
        elif self.entry is not None and parent == "entry":
            if local in ATOM_TEXT_FIELDS:
                self.entry_field = local
            elif local == "link":
                href = attrs.get("href")
                if href is not None:
                    self.entry["link"] = href

    def _text(self, data: str) -> None:
        if self.scope is not None:
            self.scope.text(data)
            return
        if self.entry_field is None or self.entry is None:
            return
        data = data.strip()
        if data:
            self.entry[self.entry_field] = (self.entry.get(self.entry_field) or "") + data

    def _end(self, name: str) -> None:
        local = local_name(name)
        self.stack.pop()
        scope = self.scope
        if scope is not None:
            if scope.path:
                scope.end(name)
                return
            raw = self._raw_slice(scope.start_index) if self.keep_raw_xml else None
            self.folder = scope.finish(raw)
            self.scope = None
            return

        self.entry_field = None
        if local == "entry" and self.entry is not None:
            self._finish_entry()

    def _raw_slice(self, start: int) -> str:
        end_tag = self.parser.CurrentByteIndex
        if self.data.startswith(b"</", end_tag):
            stop = self.data.find(b">", end_tag) + 1
        elif end_tag == start:
            # Elemento vacío <X/>: inicio y fin comparten posición
            stop = self.data.find(b"/>", start) + 2
        else:
            # Elemento vacío <X/>: el fin ya apunta tras "/>"
            stop = end_tag
        return self.data[start:stop].decode(self.encoding, errors="replace")

    def _finish_entry(self) -> None:
        entry = self.entry
        self.entry = None
        folder = self.folder
        self.folder = None
        if entry.get("id") is None and entry.get("title") is None:
            return
        record = folder or ContractFolderRecord()
        record.id = entry.get("id")
        record.title = entry.get("title")
        record.link = entry.get("link")
        record.summary = entry.get("summary")
        record.updated = entry.get("updated")
        self.records.append(record)


def parse_feed_bytes(
    data: bytes,
    keep_raw_xml: bool = False,
    path: Optional[Path] = None,
) -> list[ContractFolderRecord]:
    """
    Parsea un documento Atom completo en memoria. XML mal formado -> ParseError(path).
    Los contadores de result_id son locales a cada ContractFolderStatus: el resultado es
    determinista aunque se parseen varios ficheros en paralelo.
    """
    handler = FeedHandler(data, keep_raw_xml=keep_raw_xml)
    try:
        records = handler.run()
    except xml.parsers.expat.ExpatError as e:
        raise ParseError(path, f"XML mal formado: {e}") from e
    logger.debug("%s: %s entradas", path or "<bytes>", len(records))
    return records


def parse_feed_file(path: Path, keep_raw_xml: bool = False) -> list[ContractFolderRecord]:
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as e:
        raise ParseError(path, f"no se pudo leer: {e}") from e
    return parse_feed_bytes(data, keep_raw_xml=keep_raw_xml, path=path)
