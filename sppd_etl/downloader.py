"""
Descarga concurrente de los ZIP de cada periodo con reintentos y backoff exponencial.

- Como máximo `concurrent_downloads` descargas en vuelo (asyncio.Semaphore).
- Reintentables: errores de red, timeouts, HTTP 5xx y 429. El resto (p. ej. 404 = periodo sin datos)
  termina la descarga de ese periodo sin afectar a los demás.
- Escritura en {periodo}.zip.part y renombrado atómico a {periodo}.zip; si el ZIP ya existe se omite.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional

import aiohttp
from tqdm import tqdm

from sppd_etl.errors import DownloadError
from sppd_etl.links import HEADERS

logger = logging.getLogger("sppd_etl.downloader")

CHUNK_SIZE = 65536
CONNECT_TIMEOUT_SEC = 30
READ_TIMEOUT_SEC = 300

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 10000

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            initial_delay_ms=config.retry_initial_delay_ms,
            max_delay_ms=config.retry_max_delay_ms,
        )


class RetryState(Enum):
    RETRYING = "retrying"
    EXHAUSTED = "exhausted"
    SUCCEEDED = "succeeded"


def calculate_backoff(attempt: int, policy: RetryPolicy) -> int:
    """Espera en ms antes del reintento tras el intento `attempt` (0-based): initial * 2^attempt, con tope."""
    return min(policy.initial_delay_ms * (2 ** attempt), policy.max_delay_ms)


def is_retryable_status(status: int) -> bool:
    return status >= 500 or status == 429


def next_retry_state(attempt: int, error: Optional[DownloadError], policy: RetryPolicy) -> RetryState:
    if error is None:
        return RetryState.SUCCEEDED
    if not error.retryable or attempt >= policy.max_retries:
        return RetryState.EXHAUSTED
    return RetryState.RETRYING


@dataclass
class DownloadReport:
    downloaded: dict[str, Path] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, DownloadError] = field(default_factory=dict)


async def _fetch_to_file(session, url: str, period: str, part_path: Path) -> None:
    try:
        async with session.get(url) as resp:
            if resp.status != 200:
                raise DownloadError(
                    f"HTTP {resp.status} descargando {url}",
                    period=period,
                    url=url,
                    status=resp.status,
                    retryable=is_retryable_status(resp.status),
                )
            with open(part_path, "wb") as f:
                async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                    f.write(chunk)
    except asyncio.TimeoutError as e:
        raise DownloadError(f"Timeout descargando {url}", period=period, url=url, retryable=True) from e
    except aiohttp.ClientError as e:
        raise DownloadError(f"Error de red descargando {url}: {e}", period=period, url=url, retryable=True) from e
    except OSError as e:
        raise DownloadError(f"Error de disco escribiendo {part_path}: {e}", period=period, url=url) from e


def _discard_part(part: Path, period: str, url: str) -> None:
    try:
        part.unlink(missing_ok=True)
    except OSError as e:
        raise DownloadError(f"No se pudo eliminar {part}: {e}", period=period, url=url) from e


async def download_period(
    session,
    period: str,
    url: str,
    dest_dir: Path,
    policy: RetryPolicy,
    semaphore: asyncio.Semaphore,
    sleep: SleepFn = asyncio.sleep,
) -> Path:
    """Descarga un periodo a {dest_dir}/{period}.zip. Lanza DownloadError al agotar reintentos o ante error no reintentable."""
    target = dest_dir / f"{period}.zip"
    part = dest_dir / f"{period}.zip.part"
    if target.exists():
        logger.info("%s: ya descargado (%s), se omite", period, target)
        return target
    _discard_part(part, period, url)

    attempt = 0
    while True:
        error: Optional[DownloadError] = None
        async with semaphore:
            try:
                await _fetch_to_file(session, url, period, part)
            except DownloadError as e:
                error = e
        state = next_retry_state(attempt, error, policy)
        if state is RetryState.SUCCEEDED:
            try:
                os.replace(part, target)
            except OSError as e:
                _discard_part(part, period, url)
                raise DownloadError(f"No se pudo mover {part} a {target}: {e}", period=period, url=url) from e
            return target
        _discard_part(part, period, url)
        if state is RetryState.EXHAUSTED:
            if error.retryable:
                logger.error("%s: reintentos agotados (%s intentos): %s", period, attempt + 1, error)
            else:
                logger.warning("%s: error no reintentable: %s", period, error)
            raise error
        delay_ms = calculate_backoff(attempt, policy)
        logger.warning(
            "%s: intento %s/%s fallido (%s), reintento en %.1fs",
            period,
            attempt + 1,
            policy.max_retries + 1,
            error,
            delay_ms / 1000,
        )
        await sleep(delay_ms / 1000)
        attempt += 1


def _new_session() -> aiohttp.ClientSession:
    timeout = aiohttp.ClientTimeout(total=None, sock_connect=CONNECT_TIMEOUT_SEC, sock_read=READ_TIMEOUT_SEC)
    return aiohttp.ClientSession(headers=HEADERS, timeout=timeout)


async def download_periods(
    links: dict[str, str],
    dest_dir: Path,
    policy: RetryPolicy,
    concurrent_downloads: int,
    session=None,
    sleep: SleepFn = asyncio.sleep,
    show_progress: bool = True,
) -> DownloadReport:
    """Descarga todos los periodos de `links`; los fallos se recogen por periodo en el informe."""
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    report = DownloadReport()
    semaphore = asyncio.Semaphore(max(1, concurrent_downloads))
    own_session = session is None
    if own_session:
        session = _new_session()

    async def one(period: str, url: str):
        existed = (dest_dir / f"{period}.zip").exists()
        try:
            path = await download_period(session, period, url, dest_dir, policy, semaphore, sleep)
            return period, path, existed, None
        except DownloadError as e:
            return period, None, existed, e

    try:
        tasks = [asyncio.ensure_future(one(p, u)) for p, u in links.items()]
        with tqdm(total=len(tasks), desc="Descargas", unit="zip", disable=not show_progress) as pbar:
            for fut in asyncio.as_completed(tasks):
                period, path, existed, error = await fut
                if error is not None:
                    report.failed[period] = error
                else:
                    report.downloaded[period] = path
                    if existed:
                        report.skipped.append(period)
                pbar.update(1)
    finally:
        if own_session:
            await session.close()

    logger.info(
        "Descargas: %s correctas (%s ya existentes), %s fallidas",
        len(report.downloaded),
        len(report.skipped),
        len(report.failed),
    )
    return report


def download_all(
    links: dict[str, str],
    dest_dir: Path,
    policy: RetryPolicy,
    concurrent_downloads: int,
    show_progress: bool = True,
) -> DownloadReport:
    return asyncio.run(download_periods(links, dest_dir, policy, concurrent_downloads, show_progress=show_progress))
