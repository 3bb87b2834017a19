"""De-overlap of coincident map points with a golden-angle (Vogel) spiral.

Render-time only: the adjusted coordinates are never written back to the roster.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from mapsync.settings import settings

GOLDEN_ANGLE_DEGREES = 137.50776
GOLDEN_ANGLE = math.radians(GOLDEN_ANGLE_DEGREES)


@dataclass(frozen=True, slots=True)
class PlacedPoint:
	id: str
	lat: float
	lng: float


def spiral_offset(index: int, base_spacing: float) -> tuple[float, float]:
	"""Offset of the ``index``-th cluster member from the centroid, in degrees."""
	radius = base_spacing * (1 + math.sqrt(index + 1))
	angle = GOLDEN_ANGLE * index
	return radius * math.cos(angle), radius * math.sin(angle)


def _cluster(points: Sequence[PlacedPoint], threshold: float) -> List[List[PlacedPoint]]:
	clusters: List[List[PlacedPoint]] = []
	for point in sorted(points, key=lambda item: item.id):
		for cluster in clusters:
			anchor = cluster[0]
			if math.hypot(point.lat - anchor.lat, point.lng - anchor.lng) <= threshold:
				cluster.append(point)
				break
		else:
			clusters.append([point])
	return clusters


def spread(
	points: Sequence[PlacedPoint],
	threshold: Optional[float] = None,
	base_spacing: Optional[float] = None,
) -> List[PlacedPoint]:
	"""Return ``points`` (same order) with members of each cluster fanned out around its centroid.

	Clustering is single-pass and anchor based over the id-sorted input: a point joins
	the first cluster whose first member lies within ``threshold`` degrees. Singletons
	pass through unchanged.
	"""
	threshold = settings.spiral_cluster_threshold_deg if threshold is None else threshold
	base_spacing = settings.spiral_base_spacing_deg if base_spacing is None else base_spacing
	placed: Dict[str, PlacedPoint] = {}
	for cluster in _cluster(points, threshold):
		if len(cluster) == 1:
			placed[cluster[0].id] = cluster[0]
			continue
		center_lat = sum(point.lat for point in cluster) / len(cluster)
		center_lng = sum(point.lng for point in cluster) / len(cluster)
		for index, point in enumerate(cluster):
			d_lat, d_lng = spiral_offset(index, base_spacing)
			placed[point.id] = PlacedPoint(point.id, center_lat + d_lat, center_lng + d_lng)
	return [placed[point.id] for point in points]
