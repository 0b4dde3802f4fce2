"""Server-side aggregation of warehouse fact rows.

Everything here is pure: no I/O, and the same rows always produce the same
result. Conversion rates are ``None`` when there are no product page views;
a missing rate is not the same thing as a 0% rate.
"""
import datetime as dt
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .models import FactRow, PeriodLabel

Number = Union[int, float]


class WireModel(BaseModel):
    """Frozen model serialized with camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class MetricSummary(WireModel):
    impressions: int = 0
    product_page_views: int = 0
    downloads: int = 0
    conversion_rate: Optional[float] = None


class TimeseriesPoint(MetricSummary):
    date: dt.date


class TrafficSourceBreakdown(MetricSummary):
    traffic_source: str


class PeriodAggregate(WireModel):
    summary: MetricSummary
    timeseries: List[TimeseriesPoint]
    breakdown: List[TrafficSourceBreakdown]


class MetricDelta(WireModel):
    impressions: int
    product_page_views: int
    downloads: int
    conversion_rate: Optional[float] = None


class MetricDeltaPercent(WireModel):
    impressions: Optional[float] = None
    product_page_views: Optional[float] = None
    downloads: Optional[float] = None
    conversion_rate: Optional[float] = None


class PeriodComparison(WireModel):
    previous: PeriodAggregate
    delta: MetricDelta
    delta_percent: MetricDeltaPercent


class AggregatedResult(WireModel):
    current: PeriodAggregate
    comparison: Optional[PeriodComparison] = None


def conversion_rate(downloads: int, product_page_views: int) -> Optional[float]:
    """downloads / product page views, or None when there were no page views."""
    if product_page_views > 0:
        return downloads / product_page_views
    return None


def percent_change(current: Optional[Number], previous: Optional[Number]) -> Optional[float]:
    """Relative change in percent, None when the previous value is 0 or unknown."""
    if current is None or previous is None or previous == 0:
        return None
    return (current - previous) / previous * 100


@dataclass
class _Totals:
    impressions: int = 0
    product_page_views: int = 0
    downloads: int = 0

    def add(self, row: FactRow) -> None:
        self.impressions += row.impressions
        self.product_page_views += row.product_page_views
        self.downloads += row.downloads

    def metrics(self) -> Dict[str, Optional[Number]]:
        return {
            "impressions": self.impressions,
            "product_page_views": self.product_page_views,
            "downloads": self.downloads,
            "conversion_rate": conversion_rate(self.downloads, self.product_page_views),
        }


class AggregationEngine:
    """Reduces fact rows into summary, time series and traffic-source breakdown."""

    def reduce(self, rows: Iterable[FactRow], comparison: bool = False) -> AggregatedResult:
        """
        Aggregate rows, optionally split into current and previous periods.

        Args:
            rows: Fact rows tagged with their period label
            comparison: Produce a previous-period aggregate and deltas

        Returns:
            The aggregated result
        """
        current_rows: List[FactRow] = []
        previous_rows: List[FactRow] = []
        for row in rows:
            if row.period_label is PeriodLabel.PREVIOUS:
                previous_rows.append(row)
            else:
                current_rows.append(row)

        current = self.aggregate_period(current_rows)
        if not comparison:
            return AggregatedResult(current=current)

        previous = self.aggregate_period(previous_rows)
        return AggregatedResult(
            current=current,
            comparison=PeriodComparison(
                previous=previous,
                delta=self._delta(current.summary, previous.summary),
                delta_percent=self._delta_percent(current.summary, previous.summary),
            ),
        )

    def aggregate_period(self, rows: Iterable[FactRow]) -> PeriodAggregate:
        total = _Totals()
        by_date: Dict[dt.date, _Totals] = defaultdict(_Totals)
        by_source: Dict[str, _Totals] = defaultdict(_Totals)

        for row in rows:
            total.add(row)
            by_date[row.date].add(row)
            by_source[row.traffic_source].add(row)

        timeseries = [
            TimeseriesPoint(date=day, **by_date[day].metrics())
            for day in sorted(by_date)
        ]

        # Most significant source first, ties broken by name
        ordered_sources = sorted(by_source.items(), key=lambda item: (-item[1].impressions, item[0]))
        breakdown = [
            TrafficSourceBreakdown(traffic_source=source, **totals.metrics())
            for source, totals in ordered_sources
        ]

        return PeriodAggregate(
            summary=MetricSummary(**total.metrics()),
            timeseries=timeseries,
            breakdown=breakdown,
        )

    @staticmethod
    def _delta(current: MetricSummary, previous: MetricSummary) -> MetricDelta:
        cvr_delta = None
        if current.conversion_rate is not None and previous.conversion_rate is not None:
            cvr_delta = current.conversion_rate - previous.conversion_rate
        return MetricDelta(
            impressions=current.impressions - previous.impressions,
            product_page_views=current.product_page_views - previous.product_page_views,
            downloads=current.downloads - previous.downloads,
            conversion_rate=cvr_delta,
        )

    @staticmethod
    def _delta_percent(current: MetricSummary, previous: MetricSummary) -> MetricDeltaPercent:
        return MetricDeltaPercent(
            impressions=percent_change(current.impressions, previous.impressions),
            product_page_views=percent_change(current.product_page_views, previous.product_page_views),
            downloads=percent_change(current.downloads, previous.downloads),
            conversion_rate=percent_change(current.conversion_rate, previous.conversion_rate),
        )
