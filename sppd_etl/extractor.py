"""
Extracción de los ZIP descargados: {download_dir}/{periodo}.zip -> {download_dir}/{periodo}/.

Modo dirigido: con una lista de permitidos solo se escriben los miembros cuyo nombre (basename)
coincide o que encajan con un patrón fnmatch; el resto se omite sin error.
Un ZIP corrupto lanza ExtractionError y el directorio parcial se elimina.
Cada extracción de periodo parte de un directorio vacío.
"""

import fnmatch
import logging
import shutil
import zipfile
import zlib
from pathlib import Path, PurePosixPath
from typing import Iterable, Optional

from sppd_etl.errors import ExtractionError

logger = logging.getLogger("sppd_etl.extractor")


def _safe_member_path(name: str) -> Optional[PurePosixPath]:
    """Ruta relativa segura del miembro o None (absoluta, con '..' o vacía)."""
    normalized = name.replace("\\", "/")
    p = PurePosixPath(normalized)
    if not p.parts or p.is_absolute() or ".." in p.parts or ":" in p.parts[0]:
        return None
    return p


def _member_allowed(name: str, allow: Optional[list[str]]) -> bool:
    if allow is None:
        return True
    basename = name.rsplit("/", 1)[-1]
    return any(basename == pattern or fnmatch.fnmatch(name, pattern) for pattern in allow)


def extract_archive(archive: Path, dest: Path, allow: Optional[Iterable[str]] = None) -> list[Path]:
    """
    Extrae `archive` en `dest` y devuelve las rutas escritas (orden del ZIP).

    Un ZIP ilegible lanza ExtractionError(corrupt=True); un fallo al escribir en `dest`
    (disco lleno, permisos) lanza ExtractionError(corrupt=False) y el ZIP sigue siendo válido.
    """
    archive = Path(archive)
    dest = Path(dest)
    allow_list = list(allow) if allow is not None else None
    created = not dest.exists()
    extracted: list[Path] = []
    try:
        with zipfile.ZipFile(archive) as zf:
            dest.mkdir(parents=True, exist_ok=True)
            for info in zf.infolist():
                if info.is_dir():
                    continue
                rel = _safe_member_path(info.filename)
                if rel is None:
                    logger.warning("%s: miembro con ruta insegura omitido: %s", archive.name, info.filename)
                    continue
                if not _member_allowed(info.filename, allow_list):
                    continue
                out = dest.joinpath(*rel.parts)
                out.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, open(out, "wb") as dst:
                    shutil.copyfileobj(src, dst, 1024 * 1024)
                extracted.append(out)
    except (zipfile.BadZipFile, EOFError, zlib.error) as e:
        _discard_partial(dest, created)
        raise ExtractionError(archive, f"ZIP corrupto: {e}", corrupt=True) from e
    except (zipfile.LargeZipFile, NotImplementedError) as e:
        _discard_partial(dest, created)
        raise ExtractionError(archive, f"ZIP no soportado: {e}") from e
    except OSError as e:
        _discard_partial(dest, created)
        raise ExtractionError(archive, f"no se pudo extraer: {e}") from e
    logger.info("%s: %s ficheros extraídos en %s", archive.name, len(extracted), dest)
    return extracted


def _discard_partial(dest: Path, created: bool) -> None:
    if created and dest.exists():
        shutil.rmtree(dest, ignore_errors=True)


def extract_period(
    download_dir: Path,
    period: str,
    allow: Optional[Iterable[str]] = None,
) -> Path:
    """
    Extrae {download_dir}/{period}.zip en {download_dir}/{period}/ y devuelve ese directorio.
    El directorio se vacía antes: solo contiene lo extraído en esta llamada.
    """
    download_dir = Path(download_dir)
    archive = download_dir / f"{period}.zip"
    if not archive.exists():
        raise ExtractionError(archive, "el ZIP no existe")
    dest = download_dir / period
    if dest.exists():
        logger.debug("%s: eliminando extracción previa %s", period, dest)
        try:
            shutil.rmtree(dest)
        except OSError as e:
            raise ExtractionError(archive, f"no se pudo vaciar {dest}: {e}") from e
    extract_archive(archive, dest, allow)
    return dest
