"""Formato de duraciones y tamaños para las líneas de log y el resumen de la CLI."""

from datetime import timedelta
from typing import Union


def format_duration(duration: Union[timedelta, float, int]) -> str:
    """HH:MM:SS a partir de un timedelta o de segundos. Las horas no se acotan a 24."""
    if isinstance(duration, timedelta):
        total = int(duration.total_seconds())
    else:
        total = int(duration)
    total = max(0, total)
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def mb_from_bytes(n_bytes: int) -> float:
    return n_bytes / (1024 * 1024)


def round_two_decimals(value: float) -> float:
    return round(value, 2)
