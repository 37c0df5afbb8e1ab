"""
Configuración del pipeline: entorno (SPPD_*), fichero TOML opcional y ajustes de la CLI.

Orden de precedencia: valores por defecto < entorno (.env) < fichero TOML < flags de la CLI.
El núcleo solo recibe un PipelineConfig ya validado (resolve_config).
"""

import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

from sppd_etl.errors import ConfigurationError
from sppd_etl.models import ProcurementType
from sppd_etl.periods import PeriodSet

DEFAULT_BATCH_SIZE = 100
DEFAULT_READ_CONCURRENCY = 16
DEFAULT_PARSER_THREADS = 0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_INITIAL_DELAY_MS = 1000
DEFAULT_RETRY_MAX_DELAY_MS = 10000
DEFAULT_CONCURRENT_DOWNLOADS = 4

# Claves admitidas fuera del PipelineConfig (las consume la CLI antes de resolver periodos)
RUN_KEYS = ("type", "start", "end")
FILE_SECTIONS = ("paths", "processing", "downloads")


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.environ.get(name, str(default))
    try:
        n = int(raw)
        return max(minimum, n)
    except ValueError:
        return default


def get_batch_size() -> int:
    """Registros por lote Parquet (SPPD_BATCH_SIZE). Por defecto 100."""
    return _env_int("SPPD_BATCH_SIZE", DEFAULT_BATCH_SIZE)


def get_read_concurrency() -> int:
    """Ficheros XML leídos a memoria a la vez (SPPD_READ_CONCURRENCY). Por defecto 16."""
    return _env_int("SPPD_READ_CONCURRENCY", DEFAULT_READ_CONCURRENCY)


def get_parser_threads() -> int:
    """Hilos de parseo XML (SPPD_PARSER_THREADS). 0 = autodetectar; fijarlo en contenedores con cuota de CPU."""
    return _env_int("SPPD_PARSER_THREADS", DEFAULT_PARSER_THREADS, minimum=0)


def get_concurrent_downloads() -> int:
    """Descargas simultáneas (SPPD_CONCURRENT_DOWNLOADS). Por defecto 4."""
    return _env_int("SPPD_CONCURRENT_DOWNLOADS", DEFAULT_CONCURRENT_DOWNLOADS)


def get_max_retries() -> int:
    """Reintentos por descarga (SPPD_MAX_RETRIES). Por defecto 3."""
    return _env_int("SPPD_MAX_RETRIES", DEFAULT_MAX_RETRIES, minimum=0)


def get_data_dir() -> Path:
    """Raíz de datos (SPPD_DATA_DIR): tmp/ para ZIP y extracción, parquet/ para la salida. Por defecto ./data."""
    return Path(os.environ.get("SPPD_DATA_DIR", "data"))


@dataclass
class PipelineConfig:
    procurement_type: ProcurementType = ProcurementType.PUBLIC_TENDERS
    periods: PeriodSet = field(default_factory=PeriodSet)
    batch_size: int = DEFAULT_BATCH_SIZE
    read_concurrency: int = DEFAULT_READ_CONCURRENCY
    parser_threads: int = DEFAULT_PARSER_THREADS
    concat_batches: bool = False
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_initial_delay_ms: int = DEFAULT_RETRY_INITIAL_DELAY_MS
    retry_max_delay_ms: int = DEFAULT_RETRY_MAX_DELAY_MS
    concurrent_downloads: int = DEFAULT_CONCURRENT_DOWNLOADS
    download_dir_mc: Path = Path("data/tmp/mc")
    download_dir_pt: Path = Path("data/tmp/pt")
    parquet_dir_mc: Path = Path("data/parquet/mc")
    parquet_dir_pt: Path = Path("data/parquet/pt")
    cleanup: bool = True
    keep_cfs_raw_xml: bool = False

    def download_dir(self, procurement_type: Optional[ProcurementType] = None) -> Path:
        pt = procurement_type or self.procurement_type
        return self.download_dir_mc if pt is ProcurementType.MINOR_CONTRACTS else self.download_dir_pt

    def output_dir(self, procurement_type: Optional[ProcurementType] = None) -> Path:
        pt = procurement_type or self.procurement_type
        return self.parquet_dir_mc if pt is ProcurementType.MINOR_CONTRACTS else self.parquet_dir_pt


_INT_KEYS = {
    "batch_size",
    "read_concurrency",
    "parser_threads",
    "max_retries",
    "retry_initial_delay_ms",
    "retry_max_delay_ms",
    "concurrent_downloads",
}
_BOOL_KEYS = {"concat_batches", "cleanup", "keep_cfs_raw_xml"}
_PATH_KEYS = {"download_dir_mc", "download_dir_pt", "parquet_dir_mc", "parquet_dir_pt"}
SETTING_KEYS = _INT_KEYS | _BOOL_KEYS | _PATH_KEYS


def env_settings() -> dict[str, Any]:
    """Valores base desde el entorno de este servicio."""
    data_dir = get_data_dir()
    return {
        "batch_size": get_batch_size(),
        "read_concurrency": get_read_concurrency(),
        "parser_threads": get_parser_threads(),
        "concurrent_downloads": get_concurrent_downloads(),
        "max_retries": get_max_retries(),
        "download_dir_mc": data_dir / "tmp" / "mc",
        "download_dir_pt": data_dir / "tmp" / "pt",
        "parquet_dir_mc": data_dir / "parquet" / "mc",
        "parquet_dir_pt": data_dir / "parquet" / "pt",
    }


def load_config_file(path: Path) -> dict[str, Any]:
    """
    Lee un fichero TOML de configuración. Admite claves planas o agrupadas en [paths], [processing]
    y [downloads]. Una clave desconocida es un error (no se ignora en silencio).
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Fichero de configuración no encontrado: {path}")
    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Fichero de configuración inválido {path}: {e}") from e

    flat: dict[str, Any] = {}
    for key, value in raw.items():
        if key in FILE_SECTIONS and isinstance(value, dict):
            for sub_key, sub_value in value.items():
                flat[sub_key] = sub_value
        else:
            flat[key] = value

    allowed = SETTING_KEYS | set(RUN_KEYS)
    unknown = sorted(k for k in flat if k not in allowed)
    if unknown:
        raise ConfigurationError(f"Directiva desconocida en {path}: {', '.join(unknown)}")
    return flat


def _coerce(key: str, value: Any) -> Any:
    if key in _INT_KEYS:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigurationError(f"{key} debe ser un entero (recibido {value!r})")
        return value
    if key in _BOOL_KEYS:
        if not isinstance(value, bool):
            raise ConfigurationError(f"{key} debe ser true/false (recibido {value!r})")
        return value
    if key in _PATH_KEYS:
        return Path(value)
    return value


def validate_config(config: PipelineConfig) -> None:
    for name in ("batch_size", "read_concurrency", "concurrent_downloads"):
        if getattr(config, name) < 1:
            raise ConfigurationError(f"{name} debe ser mayor que 0")
    for name in ("parser_threads", "max_retries", "retry_initial_delay_ms", "retry_max_delay_ms"):
        if getattr(config, name) < 0:
            raise ConfigurationError(f"{name} no puede ser negativo")
    if config.retry_initial_delay_ms > config.retry_max_delay_ms:
        raise ConfigurationError(
            "retry_initial_delay_ms debe ser menor o igual que retry_max_delay_ms"
        )


def resolve_config(
    procurement_type: ProcurementType,
    periods: PeriodSet,
    file_settings: Optional[dict[str, Any]] = None,
    overrides: Optional[dict[str, Any]] = None,
) -> PipelineConfig:
    """
    Combina entorno, fichero y flags (None = no indicado) en un PipelineConfig validado.
    Las claves type/start/end del fichero se ignoran aquí: ya las ha consumido la CLI.
    """
    values: dict[str, Any] = env_settings()
    for key, value in (file_settings or {}).items():
        if key in SETTING_KEYS:
            values[key] = _coerce(key, value)
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if key not in SETTING_KEYS:
            raise ConfigurationError(f"Directiva desconocida: {key}")
        values[key] = _coerce(key, value)

    known = {f.name for f in fields(PipelineConfig)}
    config = PipelineConfig(
        procurement_type=procurement_type,
        periods=periods,
        **{k: v for k, v in values.items() if k in known},
    )
    validate_config(config)
    return config
