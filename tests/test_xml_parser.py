"""
Tests del parser en streaming de feeds Atom / ContractFolderStatus.
Ejecutar: pytest tests/test_xml_parser.py -v
"""

import pytest

from conftest import ENTRY_LOTS, ENTRY_SUPPLIES, make_feed
from sppd_etl.errors import ParseError
from sppd_etl.models import CodeValue, ContractingParty, Process
from sppd_etl.xml_parser import local_name, parse_feed_bytes, parse_feed_file

CFS_OPEN = "<cac-place-ext:ContractFolderStatus>"
CFS_CLOSE = "</cac-place-ext:ContractFolderStatus>"


def _parse(*entries, keep_raw_xml=False):
    return parse_feed_bytes(make_feed(*entries).encode("utf-8"), keep_raw_xml=keep_raw_xml)


def test_local_name():
    assert local_name("cbc:Name") == "Name"
    assert local_name("entry") == "entry"
    assert local_name("cac-place-ext:ContractFolderStatus") == "ContractFolderStatus"


def test_one_record_per_entry(sample_feed_bytes):
    records = parse_feed_bytes(sample_feed_bytes)
    assert len(records) == 2
    assert [r.contract_id for r in records] == ["2023/001", "2023/002"]


def test_atom_fields():
    (r,) = _parse(ENTRY_SUPPLIES)
    assert r.id == "https://contrataciondelestado.es/sindicacion/licitacionesPerfilContratante/100"
    assert r.title == "Suministro de material de oficina"
    assert r.link == "https://contrataciondelestado.es/wps/poc?uri=deeplink:detalle_licitacion&idEvl=abc100"
    assert r.summary.startswith("Id licitación: 2023/001")
    assert r.updated == "2023-05-10T12:00:00.000+02:00"


def test_feed_level_title_not_taken_as_entry():
    records = _parse(ENTRY_LOTS)
    assert records[0].title == "Servicio de limpieza por lotes"
    assert records[0].summary is None


def test_status_and_party():
    (r,) = _parse(ENTRY_SUPPLIES)
    assert r.status == CodeValue(
        "ADJ", "https://contrataciondelestado.es/codice/cl/2.04/SyndicationContractFolderStatusCode-2.04.gc"
    )
    assert r.contracting_party == ContractingParty(
        name="Ayuntamiento de Prueba",
        website="https://www.ayto-prueba.es",
        type_code="3",
        type_code_list_uri="urn:ContractingAuthorityCode",
        activity_code="1",
        activity_code_list_uri="urn:ContractingAuthorityActivityCode",
        city="Madrid",
        zip="28001",
        country_code="ES",
        country_code_list_uri="urn:CountryIdentificationCode",
    )


def test_project_fields_and_multi_value_join():
    (r,) = _parse(ENTRY_SUPPLIES)
    p = r.project
    assert p.name == "Suministro de material de oficina"
    assert (p.type_code, p.type_code_list_uri) == ("1", "urn:ContractCode")
    assert (p.sub_type_code, p.sub_type_code_list_uri) == ("2", "urn:GoodsContractCode")
    assert (p.total_amount, p.total_currency) == ("12100", "EUR")
    assert (p.tax_exclusive_amount, p.tax_exclusive_currency) == ("10000", "EUR")
    # Dos RequiredCommodityClassification -> valores unidos con "_" en orden de documento
    assert p.cpv_code == "30192000_30197000"
    assert p.country_code == "ES"


def test_terms_and_process():
    (r,) = _parse(ENTRY_SUPPLIES)
    assert r.terms_funding_program == CodeValue("EU", "urn:FundingProgramCode")
    assert r.terms_award_criteria == CodeValue("OBJ", "urn:AwardingCriteriaTypeCode")
    assert r.process == Process(
        end_date="2023-05-30",
        procedure_code="1",
        procedure_code_list_uri="urn:SyndicationTenderingProcessCode",
        urgency_code="1",
        urgency_code_list_uri="urn:DiligenceTypeCode",
    )


def test_tender_result_without_lot_uses_sentinel():
    (r,) = _parse(ENTRY_SUPPLIES)
    assert len(r.tender_results) == 1
    t = r.tender_results[0]
    assert t.result_id == 1
    assert t.result_lot_id == "0"
    assert (t.code, t.code_list_uri) == ("8", "urn:TenderResultCode")
    assert t.description == "Adjudicado"
    assert t.winning_party == "Papelería Ejemplo SL"
    assert t.sme_awarded_indicator == "true"
    assert t.award_date == "2023-06-01"
    assert (t.tax_exclusive_amount, t.tax_exclusive_currency) == ("9000", "EUR")
    assert (t.payable_amount, t.payable_currency) == ("10890", "EUR")


def test_lots_and_result_counter(sample_feed_bytes):
    _, r = parse_feed_bytes(sample_feed_bytes)
    assert [lot.id for lot in r.project_lots] == ["1", "2"]
    assert [lot.name for lot in r.project_lots] == ["Lote 1: edificios", "Lote 2: colegios"]
    assert [lot.total_amount for lot in r.project_lots] == ["5000", "7000"]
    # El proyecto principal no recibe campos de los lotes
    assert r.project.name == "Servicio de limpieza"
    assert r.project.total_amount is None
    assert [t.result_id for t in r.tender_results] == [1, 2, 3]
    assert [t.result_lot_id for t in r.tender_results] == ["1", "1", "2"]
    assert [t.code for t in r.tender_results] == ["8", "9", "8"]


def test_result_counter_is_per_document():
    records = _parse(ENTRY_LOTS, ENTRY_LOTS)
    assert [t.result_id for t in records[1].tender_results] == [1, 2, 3]


def test_result_with_several_lot_ids_is_repeated():
    entry = """
  <entry>
    <id>urn:multi</id>
    <cac-place-ext:ContractFolderStatus>
      <cac:TenderResult>
        <cbc:ResultCode>8</cbc:ResultCode>
        <cac:AwardedTenderedProject>
          <cbc:ProcurementProjectLotID>1</cbc:ProcurementProjectLotID>
          <cbc:ProcurementProjectLotID>3</cbc:ProcurementProjectLotID>
        </cac:AwardedTenderedProject>
      </cac:TenderResult>
      <cac:TenderResult>
        <cbc:ResultCode>9</cbc:ResultCode>
      </cac:TenderResult>
    </cac-place-ext:ContractFolderStatus>
  </entry>
"""
    (r,) = _parse(entry)
    assert [(t.result_id, t.result_lot_id, t.code) for t in r.tender_results] == [
        (1, "1", "8"),
        (1, "3", "8"),
        (2, "0", "9"),
    ]


def test_self_closing_equals_empty_element():
    self_closing = """
  <entry>
    <id>urn:a</id>
    <cac-place-ext:ContractFolderStatus>
      <cbc:ContractFolderID/>
      <cbc-place-ext:ContractFolderStatusCode listURI="urn:status"/>
    </cac-place-ext:ContractFolderStatus>
  </entry>
"""
    open_close = """
  <entry>
    <id>urn:a</id>
    <cac-place-ext:ContractFolderStatus>
      <cbc:ContractFolderID></cbc:ContractFolderID>
      <cbc-place-ext:ContractFolderStatusCode listURI="urn:status"></cbc-place-ext:ContractFolderStatusCode>
    </cac-place-ext:ContractFolderStatus>
  </entry>
"""
    (a,) = _parse(self_closing)
    (b,) = _parse(open_close)
    assert a == b
    assert a.contract_id == ""
    assert a.status == CodeValue("", "urn:status")


def test_entry_without_contract_folder_status():
    entry = """
  <entry>
    <id>urn:sin-cfs</id>
    <title>Sin detalle</title>
  </entry>
"""
    (r,) = _parse(entry)
    assert r.id == "urn:sin-cfs"
    assert r.contract_id is None
    assert r.status == CodeValue()
    assert r.project_lots == []
    assert r.tender_results == []


def test_entry_without_id_or_title_is_dropped():
    entry = """
  <entry>
    <updated>2023-01-01T00:00:00Z</updated>
  </entry>
"""
    assert _parse(entry) == []


def test_raw_xml_off_by_default(sample_feed_bytes):
    assert all(r.cfs_raw_xml is None for r in parse_feed_bytes(sample_feed_bytes))


def test_raw_xml_is_exact_subtree(sample_feed):
    records = parse_feed_bytes(sample_feed.encode("utf-8"), keep_raw_xml=True)
    start = sample_feed.index(CFS_OPEN)
    end = sample_feed.index(CFS_CLOSE, start) + len(CFS_CLOSE)
    assert records[0].cfs_raw_xml == sample_feed[start:end]
    second_start = sample_feed.index(CFS_OPEN, end)
    second_end = sample_feed.index(CFS_CLOSE, second_start) + len(CFS_CLOSE)
    assert records[1].cfs_raw_xml == sample_feed[second_start:second_end]


def test_raw_xml_of_self_closing_contract_folder():
    feed = make_feed("""
  <entry>
    <id>urn:vacio</id>
    <cac-place-ext:ContractFolderStatus/>
  </entry>
""")
    (r,) = parse_feed_bytes(feed.encode("utf-8"), keep_raw_xml=True)
    assert r.cfs_raw_xml == "<cac-place-ext:ContractFolderStatus/>"


def test_raw_xml_of_self_closing_contract_folder_with_attributes():
    feed = make_feed("""
  <entry>
    <id>urn:vacio</id>
    <cac-place-ext:ContractFolderStatus xml:lang="es" />
  </entry>
""")
    (r,) = parse_feed_bytes(feed.encode("utf-8"), keep_raw_xml=True)
    assert r.cfs_raw_xml == '<cac-place-ext:ContractFolderStatus xml:lang="es" />'


def test_raw_xml_ends_at_own_close_tag_after_empty_child():
    feed = make_feed("""
  <entry>
    <id>urn:a</id>
    <cac-place-ext:ContractFolderStatus><cbc:ContractFolderID/></cac-place-ext:ContractFolderStatus>
  </entry>
""")
    (r,) = parse_feed_bytes(feed.encode("utf-8"), keep_raw_xml=True)
    assert r.cfs_raw_xml == (
        "<cac-place-ext:ContractFolderStatus><cbc:ContractFolderID/></cac-place-ext:ContractFolderStatus>"
    )


def test_raw_xml_respects_declared_encoding():
    feed = make_feed(ENTRY_SUPPLIES).replace('encoding="UTF-8"', 'encoding="ISO-8859-1"')
    (r,) = parse_feed_bytes(feed.encode("latin-1"), keep_raw_xml=True)
    assert "Papelería Ejemplo SL" in r.cfs_raw_xml
    assert r.contracting_party.country_code == "ES"


def test_malformed_xml_raises_parse_error(tmp_path):
    bad = tmp_path / "roto.atom"
    bad.write_bytes(b"<feed><entry><id>x</id></feed>")
    with pytest.raises(ParseError) as exc:
        parse_feed_file(bad)
    assert exc.value.path == bad


def test_unreadable_file_raises_parse_error(tmp_path):
    with pytest.raises(ParseError):
        parse_feed_file(tmp_path / "no_existe.atom")
