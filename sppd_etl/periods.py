"""
Periodos de publicación: año completo (YYYY, solo años pasados) o mes (YYYYMM, solo año en curso).

Incluye el filtrado por rango sobre el listado {periodo: url} obtenido de la página de datos abiertos.
"""

from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional

from sppd_etl.errors import ConfigurationError, PeriodValidationError


def validate_period_format(raw: str) -> None:
    """Comprueba solo el formato (dígitos, longitud 4 o 6); las reglas de calendario van en parse_period."""
    if raw == "":
        raise PeriodValidationError("Periodo inválido: cadena vacía")
    if not raw.isdigit():
        raise PeriodValidationError(f"Periodo inválido {raw!r}: debe contener solo dígitos")
    if len(raw) not in (4, 6):
        raise PeriodValidationError(f"Periodo inválido {raw!r}: debe tener 4 o 6 dígitos (YYYY o YYYYMM)")


@dataclass(frozen=True, order=True)
class Period:
    year: int
    # 0 = año completo
    month: int = 0

    @property
    def is_full_year(self) -> bool:
        return self.month == 0

    def __str__(self) -> str:
        if self.is_full_year:
            return f"{self.year:04d}"
        return f"{self.year:04d}{self.month:02d}"


def parse_period(raw: str, today: Optional[date] = None) -> Period:
    raw = raw.strip()
    validate_period_format(raw)
    today = today or date.today()
    year = int(raw[:4])
    if len(raw) == 4:
        if year >= today.year:
            raise PeriodValidationError(
                f"Periodo {raw}: los periodos anuales solo existen para años pasados; "
                f"para {today.year} use YYYYMM"
            )
        return Period(year)
    month = int(raw[4:])
    if not 1 <= month <= 12:
        raise PeriodValidationError(f"Periodo {raw}: mes fuera de rango")
    if year != today.year:
        raise PeriodValidationError(
            f"Periodo {raw}: los periodos mensuales solo existen para el año en curso ({today.year}); use YYYY"
        )
    if month > today.month:
        raise PeriodValidationError(f"Periodo {raw}: posterior al mes en curso")
    return Period(year, month)


class PeriodSet:
    """Secuencia ordenada y sin duplicados de periodos ya validados."""

    def __init__(self, periods: Iterable[Period] = ()):
        self._periods = tuple(sorted(set(periods)))

    @classmethod
    def from_strings(cls, values: Iterable[str], today: Optional[date] = None) -> "PeriodSet":
        return cls(parse_period(v, today) for v in values)

    @classmethod
    def from_links(cls, links: dict[str, str]) -> "PeriodSet":
        """Periodos de un listado ya filtrado; solo se revisa el formato (la web publica lo que existe)."""
        periods = []
        for key in links:
            validate_period_format(key)
            periods.append(Period(int(key[:4]), int(key[4:] or 0)))
        return cls(periods)

    def __iter__(self):
        return iter(self._periods)

    def __len__(self) -> int:
        return len(self._periods)

    def __contains__(self, item) -> bool:
        return item in self._periods

    def __eq__(self, other) -> bool:
        return isinstance(other, PeriodSet) and self._periods == other._periods

    def __repr__(self) -> str:
        return f"PeriodSet({[str(p) for p in self._periods]})"


def _period_sort_key(raw: str) -> tuple[int, int]:
    return int(raw[:4]), int(raw[4:] or 0)


def filter_periods_by_range(
    links: dict[str, str],
    start: Optional[str] = None,
    end: Optional[str] = None,
) -> dict[str, str]:
    """
    Filtra el listado de enlaces al rango [start, end] (inclusivo, orden cronológico).
    start/end, si se indican, deben existir en el listado; claves no numéricas se descartan.
    """
    available = sorted((k for k in links if k.isdigit() and len(k) in (4, 6)), key=_period_sort_key)
    for label, value in (("inicial", start), ("final", end)):
        if value is None:
            continue
        validate_period_format(value)
        if value not in links:
            raise PeriodValidationError(
                f"Periodo {label} {value} no disponible. Periodos disponibles: {', '.join(available)}"
            )
    if start is not None and end is not None and _period_sort_key(start) > _period_sort_key(end):
        raise ConfigurationError(
            f"El periodo inicial {start} debe ser menor o igual que el periodo final {end}"
        )
    lo = _period_sort_key(start) if start is not None else None
    hi = _period_sort_key(end) if end is not None else None
    out = {}
    for key in available:
        k = _period_sort_key(key)
        if lo is not None and k < lo:
            continue
        if hi is not None and k > hi:
            continue
        out[key] = links[key]
    return out
