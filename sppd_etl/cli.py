"""
CLI del ETL de la Plataforma de Contratación del Sector Público. Punto de entrada: sppd-etl.

Comandos: download, links, health.
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from sppd_etl import __version__
from sppd_etl.config import get_data_dir, load_config_file, resolve_config
from sppd_etl.errors import ConfigurationError, DownloadError
from sppd_etl.links import fetch_zip_links
from sppd_etl.models import ProcurementType
from sppd_etl.periods import PeriodSet, filter_periods_by_range
from sppd_etl.pipeline import PeriodOutcome, run_pipeline
from sppd_etl.utils import format_duration, mb_from_bytes, round_two_decimals

LOG_PREFIX = "[sppd_etl]"
logger = logging.getLogger("sppd_etl")

DEFAULT_TYPE = "public-tenders"
MIN_PYTHON = (3, 11)
REQUIRED = ("pandas", "pyarrow", "requests", "aiohttp", "bs4")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def _load_env() -> None:
    """Carga el .env del directorio actual y de la raíz de este workspace."""
    workspace_root = Path(__file__).resolve().parent.parent
    load_dotenv()
    load_dotenv(workspace_root / ".env")


def _configure_logging(verbose: bool = False) -> None:
    if not logger.handlers:
        h = logging.StreamHandler(sys.stderr)
        h.setFormatter(logging.Formatter(LOG_PREFIX + " %(message)s"))
        logger.addHandler(h)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def _file_settings(args: argparse.Namespace) -> dict[str, Any]:
    path = getattr(args, "config", None)
    return load_config_file(path) if path else {}


def _resolve_type(args: argparse.Namespace, file_settings: dict[str, Any]) -> ProcurementType:
    return ProcurementType.from_alias(args.type or file_settings.get("type") or DEFAULT_TYPE)


def _resolve_links(
    args: argparse.Namespace, file_settings: dict[str, Any], ptype: ProcurementType
) -> dict[str, str]:
    """{periodo: url} de la página de datos abiertos, filtrado al rango pedido (flags > fichero)."""
    start = args.start or file_settings.get("start")
    end = args.end or file_settings.get("end")
    links = fetch_zip_links(ptype)
    return filter_periods_by_range(
        links,
        str(start) if start is not None else None,
        str(end) if end is not None else None,
    )


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Flags de la CLI como capa final; None = no indicado."""
    return {
        "batch_size": args.batch_size,
        "read_concurrency": args.read_concurrency,
        "parser_threads": args.parser_threads,
        "concat_batches": True if args.concat_batches else None,
        "max_retries": args.max_retries,
        "concurrent_downloads": args.concurrent_downloads,
        "cleanup": False if args.no_cleanup else None,
        "keep_cfs_raw_xml": True if args.keep_cfs_raw_xml else None,
    }


def _output_size(outcome: PeriodOutcome) -> int:
    if outcome.output is None:
        return 0
    if outcome.output.is_file():
        return outcome.output.stat().st_size
    return sum(p.stat().st_size for p in outcome.batches if p.exists())


def _print_summary(outcomes: list[PeriodOutcome]) -> None:
    fmt = "%-8s %-30s %10s %8s %10s %9s"
    print(fmt % ("PERIODO", "ESTADO", "REGISTROS", "OMITIDOS", "MB", "DURACIÓN"))
    for o in outcomes:
        mb = round_two_decimals(mb_from_bytes(_output_size(o)))
        print(fmt % (o.period, o.status.value, o.records, len(o.skipped_files), mb, format_duration(o.elapsed_sec)))
        if o.error is not None:
            print(f"  {o.error}", file=sys.stderr)
        for path, message in o.skipped_files:
            print(f"  omitido {path.name}: {message}", file=sys.stderr)


def cmd_download(args: argparse.Namespace) -> int:
    """Descarga, parsea y escribe en Parquet los periodos del rango indicado."""
    try:
        file_settings = _file_settings(args)
        ptype = _resolve_type(args, file_settings)
        # Se valida antes de consultar la web; los periodos se fijan con el listado filtrado
        config = resolve_config(ptype, PeriodSet(), file_settings, _overrides(args))
        links = _resolve_links(args, file_settings, ptype)
        config.periods = PeriodSet.from_links(links)
    except ConfigurationError as e:
        print(f"Error de configuración: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except DownloadError as e:
        print(str(e), file=sys.stderr)
        return EXIT_FAILED

    if not links:
        print(f"No hay periodos disponibles para {ptype.display_name} en el rango indicado.", file=sys.stderr)
        return EXIT_OK

    print(f"Descargando: {ptype.display_name} ({', '.join(links)})")
    outcomes = run_pipeline(config, links, allow=args.only, show_progress=not args.no_progress)
    _print_summary(outcomes)
    failed = [o.period for o in outcomes if o.status.is_failure]
    if failed:
        print(f"Periodos fallidos: {', '.join(failed)}", file=sys.stderr)
        return EXIT_FAILED
    return EXIT_OK


def cmd_links(args: argparse.Namespace) -> int:
    """Lista los periodos disponibles (y sus URL) para un tipo de contratación."""
    try:
        links = _resolve_links(args, {}, _resolve_type(args, {}))
    except ConfigurationError as e:
        print(f"Error de configuración: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except DownloadError as e:
        print(str(e), file=sys.stderr)
        return EXIT_FAILED
    for period, url in links.items():
        print(f"{period}\t{url}")
    return EXIT_OK


def cmd_health(_args: argparse.Namespace) -> int:
    """Versión de Python, paquetes requeridos y directorio de datos escribible. Exit 0/1 para supervisión."""
    failed = False
    if sys.version_info >= MIN_PYTHON:
        print(f"OK python {sys.version_info.major}.{sys.version_info.minor}")
    else:
        print(f"FAIL python {sys.version_info.major}.{sys.version_info.minor} (se requiere >= {MIN_PYTHON[0]}.{MIN_PYTHON[1]})")
        failed = True

    for name in REQUIRED:
        try:
            __import__(name)
            print(f"OK {name}")
        except ImportError:
            print(f"FAIL {name}")
            failed = True

    data_dir = get_data_dir()
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(f"FAIL data dir {data_dir}: {e}")
        return EXIT_FAILED
    if os.access(data_dir, os.W_OK):
        print(f"OK data dir escribible: {data_dir}")
    else:
        print(f"FAIL data dir no escribible: {data_dir}")
        failed = True
    return EXIT_FAILED if failed else EXIT_OK


def _add_range_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "-t",
        "--type",
        default=None,
        metavar="TIPO",
        help="Tipo de contratación: minor-contracts (mc, min) o public-tenders (pt, pub). Por defecto public-tenders.",
    )
    p.add_argument("-s", "--start", default=None, metavar="PERIODO", help="Periodo inicial (YYYY o YYYYMM, ej. 202301)")
    p.add_argument("-e", "--end", default=None, metavar="PERIODO", help="Periodo final (YYYY o YYYYMM, ej. 202312)")
    p.add_argument("-v", "--verbose", action="store_true", help="Log en nivel DEBUG")


_HELP_EPILOG = """
Flujo por periodo:
  descarga ZIP -> extracción -> parseo Atom/ContractFolderStatus -> lotes Parquet -> [consolidación] -> limpieza

Configuración (de menor a mayor prioridad):
  valores por defecto < variables SPPD_* (.env) < --config fichero.toml < flags

Códigos de salida: 0 correcto, 1 algún periodo fallido, 2 error de configuración.
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sppd-etl",
        description="Descarga y convierte a Parquet los datos abiertos de contratación del sector público.",
        epilog=_HELP_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", help="Comandos disponibles")

    dl = subparsers.add_parser(
        "download",
        help="Descarga y convierte a Parquet un rango de periodos.",
        description="Descarga los ZIP del rango, los extrae, parsea los feeds y escribe lotes Parquet por periodo.",
    )
    _add_range_args(dl)
    dl.add_argument("--config", type=Path, default=None, metavar="FICHERO", help="Fichero TOML de configuración")
    group_proc = dl.add_argument_group("procesado")
    group_proc.add_argument("--batch-size", type=int, default=None, metavar="N", help="Registros por lote Parquet (por defecto 100)")
    group_proc.add_argument("--read-concurrency", type=int, default=None, metavar="N", help="Ficheros XML en memoria a la vez (por defecto 16)")
    group_proc.add_argument("--parser-threads", type=int, default=None, metavar="N", help="Hilos de parseo; 0 = autodetectar")
    group_proc.add_argument("--concat-batches", action="store_true", help="Consolidar los lotes de cada periodo en {periodo}.parquet")
    group_proc.add_argument("--keep-cfs-raw-xml", action="store_true", help="Conservar el XML original de ContractFolderStatus en la columna cfs_raw_xml")
    group_proc.add_argument(
        "--only",
        action="append",
        default=None,
        metavar="PATRÓN",
        help="Extraer solo los miembros del ZIP con ese nombre o patrón (repetible)",
    )
    group_dl = dl.add_argument_group("descargas")
    group_dl.add_argument("--max-retries", type=int, default=None, metavar="N", help="Reintentos por descarga (por defecto 3)")
    group_dl.add_argument("--concurrent-downloads", type=int, default=None, metavar="N", help="Descargas simultáneas (por defecto 4)")
    dl.add_argument("--no-cleanup", action="store_true", help="Conservar ZIP y ficheros extraídos")
    dl.add_argument("--no-progress", action="store_true", help="Sin barras de progreso")
    dl.set_defaults(func=cmd_download)

    links_parser = subparsers.add_parser(
        "links",
        help="Lista los periodos disponibles y sus URL.",
        description="Consulta la página de datos abiertos y lista {periodo, url}, opcionalmente filtrado por rango.",
    )
    _add_range_args(links_parser)
    links_parser.set_defaults(func=cmd_links)

    subparsers.add_parser(
        "health",
        help="Comprueba Python, paquetes y directorio de datos.",
        description="Comprueba versión de Python, paquetes requeridos y que SPPD_DATA_DIR sea escribible. Sale con 0 si todo es correcto.",
    ).set_defaults(func=cmd_health)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    _load_env()
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return EXIT_OK
    _configure_logging(getattr(args, "verbose", False))
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
