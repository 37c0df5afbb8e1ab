"""
Parseo de un periodo extraído: descubre los feeds, los lee y los descompone en lotes Parquet.

Dos recursos acotados e independientes:
- lectura: como mucho `read_concurrency` ficheros en memoria a la vez (pool de lectura + ventana
  de futuros en vuelo). El buffer de un fichero se libera al terminar su parseo.
- CPU: el parseo XML corre en un pool propio de `parser_threads` hilos (0 = os.cpu_count()).

Un fichero mal formado se registra como omitido y el periodo continúa.
"""

import logging
import os
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path

from tqdm import tqdm

from sppd_etl.errors import ParseError
from sppd_etl.models import ContractFolderRecord
from sppd_etl.parquet_writer import BatchWriter
from sppd_etl.xml_parser import parse_feed_bytes

logger = logging.getLogger("sppd_etl.parser")

FEED_EXTENSIONS = (".xml", ".atom")


@dataclass
class ParseReport:
    files_found: int = 0
    files_parsed: int = 0
    records: int = 0
    batches: list[Path] = field(default_factory=list)
    skipped_files: list[tuple[Path, str]] = field(default_factory=list)


def find_feed_files(directory: Path) -> list[Path]:
    """Ficheros .xml/.atom (sin distinguir mayúsculas) bajo `directory`, recursivo y ordenado."""
    directory = Path(directory)
    if not directory.is_dir():
        return []
    return sorted(
        p for p in directory.rglob("*") if p.is_file() and p.suffix.lower() in FEED_EXTENSIONS
    )


def resolve_parser_threads(parser_threads: int) -> int:
    if parser_threads > 0:
        return parser_threads
    return os.cpu_count() or 1


def _read_and_parse(path: Path, parse_pool: ThreadPoolExecutor, keep_raw_xml: bool) -> list[ContractFolderRecord]:
    """Corre en el pool de lectura; mantiene el hueco de lectura hasta que el parseo termina."""
    try:
        data = path.read_bytes()
    except OSError as e:
        raise ParseError(path, f"no se pudo leer: {e}") from e
    try:
        return parse_pool.submit(parse_feed_bytes, data, keep_raw_xml, path).result()
    finally:
        del data


def parse_period_dir(
    directory: Path,
    writer: BatchWriter,
    batch_size: int,
    read_concurrency: int,
    parser_threads: int,
    keep_raw_xml: bool = False,
    show_progress: bool = True,
) -> ParseReport:
    """
    Parsea todos los feeds de `directory` y entrega lotes de `batch_size` registros a `writer`.
    El orden de registros entre ficheros no está garantizado; dentro de un fichero sí.
    """
    files = find_feed_files(directory)
    report = ParseReport(files_found=len(files))
    if not files:
        logger.warning("%s: no se encontraron ficheros XML/Atom", directory)
        return report

    batch: list[ContractFolderRecord] = []
    read_slots = max(1, read_concurrency)
    threads = resolve_parser_threads(parser_threads)
    logger.info(
        "%s: %s ficheros (lectura=%s, parseo=%s hilos, lote=%s)",
        directory,
        len(files),
        read_slots,
        threads,
        batch_size,
    )

    def consume(fut: Future, path: Path) -> None:
        nonlocal batch
        try:
            records = fut.result()
        except ParseError as e:
            logger.warning("Fichero omitido: %s", e)
            report.skipped_files.append((path, str(e)))
            return
        report.files_parsed += 1
        for record in records:
            batch.append(record)
            if len(batch) >= batch_size:
                writer.write(batch)
                report.records += len(batch)
                batch = []

    with ThreadPoolExecutor(max_workers=threads, thread_name_prefix="xml-parse") as parse_pool, \
            ThreadPoolExecutor(max_workers=read_slots, thread_name_prefix="xml-read") as read_pool, \
            tqdm(total=len(files), desc=Path(directory).name, unit="fich", disable=not show_progress) as pbar:
        pending: dict[Future, Path] = {}
        for path in files:
            if len(pending) >= read_slots:
                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for fut in done:
                    consume(fut, pending.pop(fut))
                    pbar.update(1)
            pending[read_pool.submit(_read_and_parse, path, parse_pool, keep_raw_xml)] = path
        while pending:
            done, _ = wait(pending, return_when=FIRST_COMPLETED)
            for fut in done:
                consume(fut, pending.pop(fut))
                pbar.update(1)

    if batch:
        writer.write(batch)
        report.records += len(batch)
        batch = []
    report.batches = writer.close()
    logger.info(
        "%s: %s registros en %s lotes, %s ficheros omitidos",
        directory,
        report.records,
        len(report.batches),
        len(report.skipped_files),
    )
    return report

