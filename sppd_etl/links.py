"""
Descubrimiento de enlaces ZIP en las páginas de datos abiertos de Hacienda.

Cada ZIP se publica como ..._{periodo}.zip; el periodo (YYYY o YYYYMM) es la clave del listado.
"""

import logging
import re
from typing import Optional
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup

from sppd_etl.errors import DownloadError
from sppd_etl.models import ProcurementType

logger = logging.getLogger("sppd_etl.links")

PERIOD_RE = re.compile(r"_(\d+)\.zip$")
REQUEST_TIMEOUT = 30

HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "es-ES,es;q=0.9,en;q=0.8",
}


def get_session() -> requests.Session:
    """Sesión HTTP con cabeceras de navegador (el portal rechaza clientes sin User-Agent)."""
    session = requests.Session()
    session.headers.update(HEADERS)
    return session


def parse_zip_links(html: str, base_url: str) -> dict[str, str]:
    """
    Extrae {periodo: url absoluta} de los <a href="...zip"> de la página.
    Si un periodo aparece varias veces, gana el último enlace.
    """
    soup = BeautifulSoup(html, "html.parser")
    links: dict[str, str] = {}
    for a in soup.select('a[href$=".zip"]'):
        url = urljoin(base_url, a["href"].strip())
        filename = urlparse(url).path.rsplit("/", 1)[-1]
        m = PERIOD_RE.search(filename)
        if m:
            links[m.group(1)] = url
    return links


def fetch_zip_links(
    procurement_type: ProcurementType,
    session: Optional[requests.Session] = None,
) -> dict[str, str]:
    url = procurement_type.landing_url
    session = session or get_session()
    logger.info("Obteniendo enlaces de %s: %s", procurement_type.display_name, url)
    try:
        resp = session.get(url, timeout=REQUEST_TIMEOUT)
        resp.raise_for_status()
    except requests.RequestException as e:
        status = getattr(getattr(e, "response", None), "status_code", None)
        raise DownloadError(f"No se pudo obtener la página de enlaces {url}: {e}", url=url, status=status) from e
    links = parse_zip_links(resp.text, url)
    logger.info("%s periodos disponibles", len(links))
    return links
