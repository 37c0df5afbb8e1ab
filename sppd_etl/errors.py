"""
Jerarquía de errores del pipeline.

Cada etapa lanza su propio tipo para que el orquestador pueda aislar fallos por periodo
(descarga, extracción, escritura) o por fichero (parseo) sin abortar el resto del run.
"""

from pathlib import Path
from typing import Optional


class SppdError(Exception):
    """Base de todos los errores del ETL."""


class ConfigurationError(SppdError):
    """Configuración inválida: directiva desconocida, valor fuera de rango, alias no reconocido."""


class PeriodValidationError(ConfigurationError):
    """Periodo mal formado o no disponible en el listado de enlaces."""


class DownloadError(SppdError):
    def __init__(
        self,
        message: str,
        period: Optional[str] = None,
        url: Optional[str] = None,
        status: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.period = period
        self.url = url
        self.status = status
        self.retryable = retryable


class ExtractionError(SppdError):
    """`corrupt` distingue un ZIP dañado de un fallo al escribir en destino."""

    def __init__(self, archive: Path, message: str, corrupt: bool = False):
        super().__init__(f"{archive}: {message}")
        self.archive = Path(archive)
        self.corrupt = corrupt


class ParseError(SppdError):
    def __init__(self, path: Optional[Path], message: str):
        super().__init__(f"{path}: {message}" if path else message)
        self.path = Path(path) if path else None


class WriteError(SppdError):
    def __init__(self, path: Optional[Path], message: str):
        super().__init__(f"{path}: {message}" if path else message)
        self.path = Path(path) if path else None
