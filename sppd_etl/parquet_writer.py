"""
Escritura Parquet por lotes con esquema fijo.

Cada lote va a {output_dir}/{periodo}/batch_NNNN.parquet. Todas las escrituras usan RECORD_SCHEMA,
de modo que los ficheros de lote son fragmentos intercambiables. La consolidación opcional une los
lotes de un periodo en {output_dir}/{periodo}.parquet (coste en memoria: el periodo completo).
"""

import logging
import os
import queue
import threading
from dataclasses import fields
from pathlib import Path
from typing import Optional

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from sppd_etl.errors import WriteError
from sppd_etl.models import (
    CodeValue,
    ContractFolderRecord,
    ContractingParty,
    Process,
    Project,
    ProjectLot,
    TenderResult,
)

logger = logging.getLogger("sppd_etl.parquet_writer")

COMPRESSION = "snappy"
BATCH_GLOB = "batch_*.parquet"


def _string_struct(cls) -> pa.StructType:
    return pa.struct([pa.field(f.name, pa.string()) for f in fields(cls)])


CODE_VALUE_TYPE = _string_struct(CodeValue)
CONTRACTING_PARTY_TYPE = _string_struct(ContractingParty)
PROJECT_TYPE = _string_struct(Project)
PROJECT_LOT_TYPE = _string_struct(ProjectLot)
PROCESS_TYPE = _string_struct(Process)
TENDER_RESULT_TYPE = pa.struct(
    [
        pa.field(f.name, pa.int32() if f.name == "result_id" else pa.string())
        for f in fields(TenderResult)
    ]
)

RECORD_SCHEMA = pa.schema(
    [
        pa.field("id", pa.string()),
        pa.field("title", pa.string()),
        pa.field("link", pa.string()),
        pa.field("summary", pa.string()),
        pa.field("updated", pa.string()),
        pa.field("status", CODE_VALUE_TYPE),
        pa.field("contract_id", pa.string()),
        pa.field("contracting_party", CONTRACTING_PARTY_TYPE),
        pa.field("project", PROJECT_TYPE),
        pa.field("project_lots", pa.list_(PROJECT_LOT_TYPE)),
        pa.field("tender_results", pa.list_(TENDER_RESULT_TYPE)),
        pa.field("terms_funding_program", CODE_VALUE_TYPE),
        pa.field("terms_award_criteria", CODE_VALUE_TYPE),
        pa.field("process", PROCESS_TYPE),
        pa.field("cfs_raw_xml", pa.string()),
    ]
)
COLUMN_NAMES = RECORD_SCHEMA.names


def batch_path(period_dir: Path, index: int) -> Path:
    return Path(period_dir) / f"batch_{index:04d}.parquet"


def write_batch(path: Path, records: list[ContractFolderRecord]) -> Path:
    """Escribe un lote (no vacío) con el esquema fijo. Errores de disco/serialización -> WriteError."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        df = pd.DataFrame([r.to_row() for r in records], columns=COLUMN_NAMES)
        df.to_parquet(path, engine="pyarrow", index=False, compression=COMPRESSION, schema=RECORD_SCHEMA)
    except (OSError, ValueError, TypeError, pa.ArrowException) as e:
        raise WriteError(path, f"no se pudo escribir el lote: {e}") from e
    return path


class BatchWriter:
    """
    Escritor de lotes de un periodo con un único permiso de escritura en vuelo.

    write() entrega el lote a un hilo consumidor y vuelve; si ya hay una escritura en curso, espera
    a que termine. Así en memoria hay como mucho un lote escribiéndose y otro llenándose.
    Un fallo del consumidor se relanza como WriteError en el siguiente write() o en close().
    """

    def __init__(self, period_dir: Path):
        self.period_dir = Path(period_dir)
        self.written: list[Path] = []
        self.records_written = 0
        self._next_index = 0
        self._queue: queue.Queue = queue.Queue()
        self._permit = threading.BoundedSemaphore(1)
        self._error: Optional[WriteError] = None
        self._thread: Optional[threading.Thread] = None
        self._closed = False

    def __enter__(self) -> "BatchWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
        else:
            self._shutdown()

    def _consume(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                break
            path, records = item
            try:
                if self._error is None:
                    write_batch(path, records)
                    self.written.append(path)
                    self.records_written += len(records)
                    logger.debug("Lote escrito: %s (%s registros)", path, len(records))
            except WriteError as e:
                logger.error("%s", e)
                self._error = e
            except Exception as e:
                logger.exception("Fallo inesperado escribiendo %s", path)
                self._error = WriteError(path, str(e))
            finally:
                del records
                self._permit.release()

    def _raise_pending(self) -> None:
        if self._error is not None:
            raise self._error

    def write(self, records: list[ContractFolderRecord]) -> None:
        if self._closed:
            raise WriteError(self.period_dir, "BatchWriter ya cerrado")
        if not records:
            return
        if self._thread is None:
            self._thread = threading.Thread(target=self._consume, name="batch-writer", daemon=True)
            self._thread.start()
        self._permit.acquire()
        if self._error is not None:
            self._permit.release()
            raise self._error
        path = batch_path(self.period_dir, self._next_index)
        self._next_index += 1
        self._queue.put((path, records))

    def _shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._thread is not None:
            self._queue.put(None)
            self._thread.join()

    def close(self) -> list[Path]:
        """Espera a la última escritura y devuelve los ficheros escritos."""
        self._shutdown()
        self._raise_pending()
        return list(self.written)


def list_batches(period_dir: Path) -> list[Path]:
    return sorted(Path(period_dir).glob(BATCH_GLOB))


def _conform(path: Path, table: pa.Table) -> pa.Table:
    """Tabla de un lote con RECORD_SCHEMA exacto (sin metadatos de pandas); si no encaja, WriteError."""
    if table.schema.names != COLUMN_NAMES:
        raise WriteError(path, "columnas distintas a las esperadas; consolidación abortada")
    try:
        # El nombre del campo de las listas puede variar entre versiones de Parquet ("item"/"element")
        return table.cast(RECORD_SCHEMA)
    except pa.ArrowException as e:
        raise WriteError(path, f"esquema distinto al esperado; consolidación abortada: {e}") from e


def consolidate_batches(period_dir: Path, target: Path) -> Optional[Path]:
    """
    Une los lotes de un periodo en un único Parquet y elimina los lotes.
    Si algún lote no tiene RECORD_SCHEMA se aborta sin tocar nada (WriteError).
    """
    period_dir = Path(period_dir)
    target = Path(target)
    files = list_batches(period_dir)
    if not files:
        return None
    tables = []
    for f in files:
        try:
            table = pq.read_table(f)
        except (OSError, pa.ArrowException) as e:
            raise WriteError(f, f"no se pudo leer el lote para consolidar: {e}") from e
        tables.append(_conform(f, table))

    merged = pa.concat_tables(tables)
    del tables
    tmp = target.with_name(target.name + ".tmp")
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        pq.write_table(merged, tmp, compression=COMPRESSION)
        os.replace(tmp, target)
    except (OSError, pa.ArrowException) as e:
        if tmp.exists():
            tmp.unlink()
        raise WriteError(target, f"no se pudo escribir el consolidado: {e}") from e

    for f in files:
        f.unlink()
    try:
        period_dir.rmdir()
    except OSError as e:
        logger.warning("No se pudo eliminar %s tras consolidar: %s", period_dir, e)
    logger.info("Consolidado %s (%s lotes, %s registros)", target, len(files), merged.num_rows)
    return target


def read_records(path: Path) -> list[ContractFolderRecord]:
    """Lee registros de un Parquet o de todos los lotes de un directorio de periodo."""
    path = Path(path)
    files = list_batches(path) if path.is_dir() else [path]
    records: list[ContractFolderRecord] = []
    for f in files:
        for row in pq.read_table(f).to_pylist():
            records.append(ContractFolderRecord.from_row(row))
    return records
