"""UTM coordinates and georeferenced bounding boxes.

A ``GeorefBox`` is an axis-aligned 3D box in easting/northing/height
tied to exactly one UTM zone.  It is the unit of octree subdivision
(``octant``), of spatial pruning (``overlaps``) and, through its
canonical 2D identifier, the key of a grid cell.

Compact UTM literals
--------------------
Coordinates can be written as one token: the three-character zone
followed by the easting digits and then the northing digits, e.g.
``"30S4300004470000"`` (zone ``30S``, easting 430000, northing 4470000).
The northing always carries exactly one more digit than the easting and
the resolution is inferred from the digit count: six easting digits are
metres, three are kilometres, and so on.  Dots are ignored.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any

from lidar_index.core.exceptions import ValidationError

_ZONE_RE = re.compile(r"^(\d{2})([A-Z])$")

#: Digits an easting carries at one-metre resolution.
_METRE_RESOLUTION_DIGITS = 6


class InvalidCoordinateError(ValidationError):
    """A UTM literal or coordinate value is malformed."""

    default_stage = "geometry"
    default_code = "INVALID_COORDINATE"


class ZoneMismatchError(ValidationError):
    """Two coordinates that must share a UTM zone do not."""

    default_stage = "geometry"
    default_code = "ZONE_MISMATCH"

    def __init__(self, first: str, second: str, **kwargs: object) -> None:
        self.first = first
        self.second = second
        super().__init__(f"UTM zones differ: {first} != {second}", **kwargs)


def normalise_zone(zone: str) -> str:
    """Return *zone* upper-cased after checking it looks like ``NNL``.

    Raises:
        InvalidCoordinateError: If the zone number is outside 1-60 or
            the code is not two digits plus a band letter.
    """
    code = zone.strip().upper()
    match = _ZONE_RE.match(code)
    if match is None or not 1 <= int(match.group(1)) <= 60:
        raise InvalidCoordinateError(f"Invalid UTM zone code: {zone!r}")
    return code


@dataclass(frozen=True, slots=True)
class UTMCoord:
    """A point in one UTM zone.

    Values are stored as floats, so a box built from integer bounds has
    the same identifier as one read back from storage.

    Attributes:
        easting: Metres east within the zone.
        northing: Metres north within the zone.
        zone: Zone code, e.g. ``"30S"``.
        height: Elevation in metres (0 when unknown).
    """

    easting: float
    northing: float
    zone: str
    height: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "zone", normalise_zone(self.zone))
        for name in ("easting", "northing", "height"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int | float) or not math.isfinite(value):
                raise InvalidCoordinateError(f"UTMCoord.{name} must be a finite number, got {value!r}")
            object.__setattr__(self, name, float(value))

    @classmethod
    def parse(cls, literal: str, *, height: float = 0.0) -> UTMCoord:
        """Parse a compact UTM literal such as ``"30S4300004470000"``.

        Raises:
            InvalidCoordinateError: If the literal is too short, holds
                non-digits, or the easting/northing split is inconsistent.
        """
        compact = literal.strip().replace(".", "")
        if len(compact) < 6:
            raise InvalidCoordinateError(f"UTM literal too short: {literal!r}")

        zone = compact[:3]
        digits = compact[3:]
        resolution = len(digits) // 2
        easting_digits = digits[:resolution]
        northing_digits = digits[resolution:]
        if not digits.isdigit() or len(northing_digits) != len(easting_digits) + 1:
            raise InvalidCoordinateError(
                f"UTM literal {literal!r} does not split into easting/northing digits"
            )

        multiplier = 10 ** (_METRE_RESOLUTION_DIGITS - resolution)
        return cls(
            easting=float(easting_digits) * multiplier,
            northing=float(northing_digits) * multiplier,
            zone=zone,
            height=height,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "easting": self.easting,
            "northing": self.northing,
            "zone": self.zone,
            "height": self.height,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UTMCoord:
        try:
            return cls(
                easting=float(data["easting"]),
                northing=float(data["northing"]),
                zone=str(data["zone"]),
                height=float(data.get("height", 0.0)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            msg = f"Malformed UTM coordinate: {data!r}"
            raise InvalidCoordinateError(msg) from exc


@dataclass(frozen=True, slots=True)
class GeorefBox:
    """Axis-aligned box between a south-west-low and a north-east-high corner.

    Both corners must share one UTM zone and ``sw`` must not exceed
    ``ne`` on any axis.  Degenerate (zero-extent) boxes are allowed; a
    single-point cloud has one.
    """

    sw: UTMCoord
    ne: UTMCoord

    def __post_init__(self) -> None:
        if self.sw.zone != self.ne.zone:
            raise ZoneMismatchError(self.sw.zone, self.ne.zone)
        if (
            self.sw.easting > self.ne.easting
            or self.sw.northing > self.ne.northing
            or self.sw.height > self.ne.height
        ):
            raise InvalidCoordinateError(
                f"South-west corner {self.sw} lies beyond north-east corner {self.ne}"
            )

    # -- construction -------------------------------------------------------

    @classmethod
    def from_bounds(
        cls,
        zone: str,
        mins: tuple[float, float, float],
        maxs: tuple[float, float, float],
    ) -> GeorefBox:
        """Build a box from ``(easting, northing, height)`` min/max triples."""
        return cls(
            sw=UTMCoord(mins[0], mins[1], zone, mins[2]),
            ne=UTMCoord(maxs[0], maxs[1], zone, maxs[2]),
        )

    @classmethod
    def from_utm_literals(cls, sw: str, ne: str) -> GeorefBox:
        """Build a 2D query box from two compact UTM literals.

        Raises:
            InvalidCoordinateError: If either literal is malformed.
            ZoneMismatchError: If the corners are in different zones.
        """
        return cls(UTMCoord.parse(sw), UTMCoord.parse(ne))

    # -- properties ---------------------------------------------------------

    @property
    def zone(self) -> str:
        return self.sw.zone

    @property
    def identifier(self) -> str:
        """Canonical 2D identifier, the grid-cell key."""
        return f"{self.sw.easting}_{self.sw.northing}_{self.ne.easting}_{self.ne.northing}"

    @property
    def mins(self) -> tuple[float, float, float]:
        return (self.sw.easting, self.sw.northing, self.sw.height)

    @property
    def maxs(self) -> tuple[float, float, float]:
        return (self.ne.easting, self.ne.northing, self.ne.height)

    # -- subdivision --------------------------------------------------------

    def octant(self, index: int) -> GeorefBox:
        """Return child octant *index* (0-7) of this box.

        Indices 0-3 take the lower height half and 4-7 the upper one.
        Within each half the order is SW, SE, NW, NE quadrant.
        """
        if not 0 <= index < 8:
            msg = f"Octant index must be in 0..7, got {index}"
            raise ValueError(msg)

        mid_e = (self.sw.easting + self.ne.easting) / 2
        mid_n = (self.sw.northing + self.ne.northing) / 2
        mid_h = (self.sw.height + self.ne.height) / 2

        east_half = index & 1
        north_half = index & 2
        upper_half = index & 4

        lo_e, hi_e = (mid_e, self.ne.easting) if east_half else (self.sw.easting, mid_e)
        lo_n, hi_n = (mid_n, self.ne.northing) if north_half else (self.sw.northing, mid_n)
        lo_h, hi_h = (mid_h, self.ne.height) if upper_half else (self.sw.height, mid_h)
        return GeorefBox.from_bounds(self.zone, (lo_e, lo_n, lo_h), (hi_e, hi_n, hi_h))

    def octants(self) -> tuple[GeorefBox, ...]:
        return tuple(self.octant(i) for i in range(8))

    # -- predicates ---------------------------------------------------------

    def overlaps(self, other: GeorefBox) -> bool:
        """Return ``True`` unless *other* lies strictly E, W, N or S of this box.

        Heights are ignored and touching boundaries count as overlap.
        Boxes in different zones never overlap.
        """
        if self.zone != other.zone:
            return False
        return not (
            other.sw.easting > self.ne.easting
            or self.sw.easting > other.ne.easting
            or other.sw.northing > self.ne.northing
            or self.sw.northing > other.ne.northing
        )

    def contains_point(
        self,
        easting: float,
        northing: float,
        height: float | None = None,
        *,
        closed: tuple[bool, bool, bool] = (True, True, True),
    ) -> bool:
        """Containment test, per axis ``[min, max)`` or ``[min, max]``.

        An axis flagged in *closed* (easting, northing, height) includes
        its max face; the others exclude it, so neighbouring boxes that
        share a face never both claim a point on it.  The default is
        fully inclusive.  A ``None`` height makes the test planar.
        """
        axes = [
            (easting, self.sw.easting, self.ne.easting, closed[0]),
            (northing, self.sw.northing, self.ne.northing, closed[1]),
        ]
        if height is not None:
            axes.append((height, self.sw.height, self.ne.height, closed[2]))
        return all(lo <= v < hi or (shut and v == hi) for v, lo, hi, shut in axes)

    # -- derived boxes ------------------------------------------------------

    def regularized(self) -> GeorefBox:
        """Return a box with equal easting and northing extents.

        The shorter horizontal side is grown from the south-west corner
        to match the longer one; heights are kept.
        """
        side = max(self.ne.easting - self.sw.easting, self.ne.northing - self.sw.northing)
        return GeorefBox.from_bounds(
            self.zone,
            self.mins,
            (self.sw.easting + side, self.sw.northing + side, self.ne.height),
        )

    def cells(self, cell_size: float) -> list[GeorefBox]:
        """Tile this box with grid cells of *cell_size* aligned to the zone origin.

        Cells are half-open on their max faces, so a box whose max edge
        sits exactly on a grid line also gets the cell beyond that line.
        Every returned cell keeps this box's height range.
        """
        if cell_size <= 0:
            msg = f"cell_size must be > 0, got {cell_size}"
            raise ValueError(msg)

        start_e = math.floor(self.sw.easting / cell_size) * cell_size
        start_n = math.floor(self.sw.northing / cell_size) * cell_size
        count_e = math.floor((self.ne.easting - start_e) / cell_size) + 1
        count_n = math.floor((self.ne.northing - start_n) / cell_size) + 1

        tiles: list[GeorefBox] = []
        for i in range(count_e):
            for j in range(count_n):
                e0 = start_e + i * cell_size
                n0 = start_n + j * cell_size
                tiles.append(
                    GeorefBox.from_bounds(
                        self.zone,
                        (e0, n0, self.sw.height),
                        (e0 + cell_size, n0 + cell_size, self.ne.height),
                    )
                )
        return tiles

    # -- serialisation ------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {"sw": self.sw.to_dict(), "ne": self.ne.to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GeorefBox:
        try:
            return cls(UTMCoord.from_dict(data["sw"]), UTMCoord.from_dict(data["ne"]))
        except KeyError as exc:
            msg = f"Malformed bounding box: {data!r}"
            raise InvalidCoordinateError(msg) from exc
