"""Log and metric models for deployed resources."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

LogResourceType = Literal["lambda", "api-gateway"]
MetricResourceType = Literal["lambda", "api-gateway", "cloudfront"]
MetricStatistic = Literal["Sum", "Average", "Minimum", "Maximum", "SampleCount"]


class LogEvent(BaseModel):
    """A single CloudWatch Logs event."""

    timestamp: datetime
    message: str
    log_stream: str | None = None


class MetricDatapoint(BaseModel):
    """One aggregated CloudWatch datapoint."""

    timestamp: datetime
    value: float
    unit: str | None = None


class LogsResponse(BaseModel):
    """Log events of one deployed resource."""

    project_name: str
    resource_type: str
    log_group: str
    region: str
    start_time: datetime
    end_time: datetime
    events: list[LogEvent] = Field(default_factory=list)


class MetricsResponse(BaseModel):
    """Datapoints of one metric of a deployed resource."""

    project_name: str
    resource_type: str
    namespace: str
    metric_name: str
    statistic: str
    period: int
    dimensions: dict[str, str]
    region: str
    start_time: datetime
    end_time: datetime
    datapoints: list[MetricDatapoint] = Field(default_factory=list)
