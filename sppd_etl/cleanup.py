"""
Limpieza de artefactos intermedios de un periodo: {download_dir}/{periodo}.zip y {download_dir}/{periodo}/.

Se llama solo cuando la salida Parquet del periodo ya está escrita (y consolidada, si se pidió).
Un fallo al borrar se registra como aviso y se cuenta; nunca hace fallar el periodo.
"""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger("sppd_etl.cleanup")


@dataclass
class CleanupStats:
    removed: int = 0
    failed: int = 0


def cleanup_period(download_dir: Path, period: str, enabled: bool = True) -> CleanupStats:
    stats = CleanupStats()
    if not enabled:
        logger.info("%s: limpieza omitida (Cleanup skipped, --no-cleanup)", period)
        return stats

    download_dir = Path(download_dir)
    archive = download_dir / f"{period}.zip"
    extracted = download_dir / period

    if archive.exists():
        try:
            archive.unlink()
            stats.removed += 1
        except OSError as e:
            stats.failed += 1
            logger.warning("%s: no se pudo eliminar %s: %s", period, archive, e)

    if extracted.exists():
        try:
            shutil.rmtree(extracted)
            stats.removed += 1
        except OSError as e:
            stats.failed += 1
            logger.warning("%s: no se pudo eliminar %s: %s", period, extracted, e)

    logger.info("%s: limpieza completada (%s eliminados, %s errores)", period, stats.removed, stats.failed)
    return stats
