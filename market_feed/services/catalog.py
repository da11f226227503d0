"""Static instrument catalog for the indices shown by the terminal."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Sequence

from ..models import Region


@dataclass(frozen=True)
class IndexDefinition:
    name: str
    symbol: str
    reference_level: float
    reference_ytd: float = 0.0


Catalog = Mapping[Region, Sequence[IndexDefinition]]


DEFAULT_CATALOG: Dict[Region, List[IndexDefinition]] = {
    Region.AMERICAS: [
        IndexDefinition("DOW JONES", "^DJI", 42863.86, 12.4),
        IndexDefinition("S&P 500", "^GSPC", 5815.03, 21.9),
        IndexDefinition("NASDAQ", "^IXIC", 18342.94, 22.2),
        IndexDefinition("S&P/TSX Comp", "^GSPTSE", 24471.17, 16.8),
        IndexDefinition("S&P/BMV IPC", "^MXX", 52456.56, -8.6),
        IndexDefinition("IBOVESPA", "^BVSP", 129992.30, -3.1),
    ],
    Region.EMEA: [
        IndexDefinition("Euro Stoxx 50", "^STOXX50E", 4957.58, 9.6),
        IndexDefinition("FTSE 100", "^FTSE", 8253.65, 6.7),
        IndexDefinition("CAC 40", "^FCHI", 7534.59, -0.1),
        IndexDefinition("DAX", "^GDAXI", 19373.83, 15.7),
        IndexDefinition("IBEX 35", "^IBEX", 11943.80, 18.2),
        IndexDefinition("FTSE MIB", "FTSEMIB.MI", 35016.33, 15.4),
        IndexDefinition("OMX STKH30", "^OMX", 2596.42, 8.3),
        IndexDefinition("SWISS MKT", "^SSMI", 12188.84, 9.4),
    ],
    Region.ASIA_PACIFIC: [
        IndexDefinition("NIKKEI", "^N225", 39605.80, 18.4),
        IndexDefinition("HANG SENG", "^HSI", 20804.11, 22.0),
        IndexDefinition("CSI 300", "000300.SS", 3997.71, 16.5),
        IndexDefinition("S&P/ASX 200", "^AXJO", 8283.20, 9.1),
    ],
}

# Names are matched by substring so variants such as "S&P 500 FUT" inherit the class.
HIGH_VOLATILITY = ("IBOVESPA", "HANG SENG", "CSI 300")
LOW_VOLATILITY = ("S&P 500", "DOW JONES")


def volatility_multiplier(instrument_id: str) -> float:
    if any(name in instrument_id for name in HIGH_VOLATILITY):
        return 1.5
    if any(name in instrument_id for name in LOW_VOLATILITY):
        return 0.8
    return 1.0


def display_rank(region: Region, position: int) -> str:
    """Rank label for the ``position``-th (zero based) instrument of ``region``."""

    return f"{region.rank_prefix}{position + 1})"


def catalog_size(catalog: Catalog) -> int:
    return sum(len(definitions) for definitions in catalog.values())
