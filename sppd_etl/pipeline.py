"""
Orquestación por periodo: descarga -> extracción -> parseo/lotes -> [consolidación] -> limpieza.

Las descargas de todos los periodos corren en paralelo (con tope); después cada periodo se procesa
por separado y su fallo queda aislado en su PeriodOutcome sin detener al resto.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from sppd_etl.cleanup import cleanup_period
from sppd_etl.config import PipelineConfig
from sppd_etl.downloader import DownloadReport, RetryPolicy, download_all
from sppd_etl.errors import DownloadError, ExtractionError, SppdError, WriteError
from sppd_etl.extractor import extract_period
from sppd_etl.parquet_writer import BatchWriter, consolidate_batches, list_batches
from sppd_etl.parser import parse_period_dir
from sppd_etl.utils import format_duration

logger = logging.getLogger("sppd_etl.pipeline")


class PeriodStatus(Enum):
    SUCCEEDED = "succeeded"
    SUCCEEDED_WITH_SKIPPED_FILES = "succeeded-with-skipped-files"
    FAILED_DOWNLOAD = "failed-download"
    FAILED_EXTRACTION = "failed-extraction"
    FAILED_WRITE = "failed-write"

    @property
    def is_failure(self) -> bool:
        return self.value.startswith("failed")


@dataclass
class PeriodOutcome:
    period: str
    status: PeriodStatus
    records: int = 0
    batches: list[Path] = field(default_factory=list)
    skipped_files: list[tuple[Path, str]] = field(default_factory=list)
    error: Optional[SppdError] = None
    # Fichero consolidado o directorio de lotes
    output: Optional[Path] = None
    elapsed_sec: float = 0.0


def _clear_stale_batches(period_dir: Path) -> None:
    """Lotes de una ejecución anterior del mismo periodo: se sustituyen, no se mezclan."""
    for f in list_batches(period_dir):
        logger.debug("Eliminando lote previo %s", f)
        f.unlink()


def process_period(
    config: PipelineConfig,
    period: str,
    allow: Optional[Iterable[str]] = None,
    show_progress: bool = True,
) -> PeriodOutcome:
    """Procesa un periodo ya descargado en {download_dir}/{period}.zip."""
    started = time.monotonic()
    download_dir = config.download_dir()
    output_dir = config.output_dir()

    try:
        extracted = extract_period(download_dir, period, allow)
    except ExtractionError as e:
        logger.error("%s: extracción fallida: %s", period, e)
        # Sin el ZIP corrupto, la siguiente ejecución vuelve a descargarlo.
        # Un fallo de escritura en destino no invalida el ZIP: se conserva.
        if e.corrupt and e.archive.exists():
            try:
                e.archive.unlink()
            except OSError as unlink_error:
                logger.warning("%s: no se pudo eliminar el ZIP corrupto %s: %s", period, e.archive, unlink_error)
        return PeriodOutcome(period, PeriodStatus.FAILED_EXTRACTION, error=e, elapsed_sec=time.monotonic() - started)

    period_dir = output_dir / period
    try:
        _clear_stale_batches(period_dir)
        with BatchWriter(period_dir) as writer:
            report = parse_period_dir(
                extracted,
                writer,
                batch_size=config.batch_size,
                read_concurrency=config.read_concurrency,
                parser_threads=config.parser_threads,
                keep_raw_xml=config.keep_cfs_raw_xml,
                show_progress=show_progress,
            )
        output: Optional[Path] = period_dir if report.batches else None
        if config.concat_batches and report.batches:
            output = consolidate_batches(period_dir, output_dir / f"{period}.parquet")
    except (WriteError, OSError) as e:
        error = e if isinstance(e, WriteError) else WriteError(period_dir, str(e))
        logger.error("%s: escritura fallida: %s", period, error)
        return PeriodOutcome(period, PeriodStatus.FAILED_WRITE, error=error, elapsed_sec=time.monotonic() - started)

    cleanup_period(download_dir, period, config.cleanup)

    status = PeriodStatus.SUCCEEDED_WITH_SKIPPED_FILES if report.skipped_files else PeriodStatus.SUCCEEDED
    outcome = PeriodOutcome(
        period,
        status,
        records=report.records,
        batches=report.batches,
        skipped_files=report.skipped_files,
        output=output,
        elapsed_sec=time.monotonic() - started,
    )
    logger.info(
        "%s: %s (%s registros, %s ficheros omitidos, %s)",
        period,
        status.value,
        outcome.records,
        len(outcome.skipped_files),
        format_duration(outcome.elapsed_sec),
    )
    return outcome


def run_pipeline(
    config: PipelineConfig,
    links: dict[str, str],
    allow: Optional[Iterable[str]] = None,
    show_progress: bool = True,
) -> list[PeriodOutcome]:
    """
    Ejecuta el pipeline para config.periods; `links` es {periodo: url} (al menos los periodos pedidos).
    Devuelve un PeriodOutcome por periodo, en orden cronológico.
    """
    periods = [str(p) for p in config.periods]
    allow_list = list(allow) if allow is not None else None
    logger.info(
        "%s: %s periodos (%s)",
        config.procurement_type.display_name,
        len(periods),
        ", ".join(periods) if periods else "-",
    )

    outcomes: dict[str, PeriodOutcome] = {}
    to_download: dict[str, str] = {}
    for period in periods:
        url = links.get(period)
        if url is None:
            error = DownloadError(f"No hay enlace de descarga para el periodo {period}", period=period)
            logger.error("%s", error)
            outcomes[period] = PeriodOutcome(period, PeriodStatus.FAILED_DOWNLOAD, error=error)
        else:
            to_download[period] = url

    report = DownloadReport()
    if to_download:
        report = download_all(
            to_download,
            config.download_dir(),
            RetryPolicy.from_config(config),
            config.concurrent_downloads,
            show_progress=show_progress,
        )

    for period in to_download:
        if period in report.failed:
            outcomes[period] = PeriodOutcome(period, PeriodStatus.FAILED_DOWNLOAD, error=report.failed[period])
            continue
        outcomes[period] = process_period(config, period, allow_list, show_progress)

    return [outcomes[p] for p in periods]
