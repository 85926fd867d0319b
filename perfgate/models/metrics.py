"""Raw metric samples and the aggregated TestMetrics summary."""

from typing import Dict, Optional

from pydantic import Field

from perfgate.models.base import CamelModel


class ApiCallSample(CamelModel):
  """One API call observed during a test run."""

  endpoint: str
  duration: float = Field(..., description='Call duration in milliseconds')
  status: int = Field(..., description='HTTP status code')
  timestamp: float = Field(..., description='Epoch seconds')


class CacheEventSample(CamelModel):
  """One cache lookup."""

  key: str
  hit: bool
  timestamp: float


class MemorySample(CamelModel):
  """One memory snapshot."""

  heap_used: int = Field(..., description='Memory in use, in bytes')
  timestamp: float


class RateLimitSample(CamelModel):
  """One rate-limit observation for a remote resource."""

  resource: str
  remaining: int
  limit: int
  timestamp: float


class ApiCallMetrics(CamelModel):
  total: int = 0
  by_endpoint: Dict[str, int] = Field(default_factory=dict)
  average_duration: float = 0.0
  error_rate: float = 0.0


class CacheMetrics(CamelModel):
  hits: int = 0
  misses: int = 0
  hit_rate: float = Field(default=0.0, ge=0.0, le=1.0)


class MemoryMetrics(CamelModel):
  peak: float = 0
  average: float = 0
  growth: float = 0


class RateLimitMetrics(CamelModel):
  triggered: bool = False
  minimum_remaining: Optional[int] = None


class TestMetrics(CamelModel):
  """Aggregated metrics for one suite execution.

  Derived deterministically from the collector's sample buffers and
  immutable once produced.
  """

  __test__ = False

  api_calls: ApiCallMetrics = Field(default_factory=ApiCallMetrics)
  cache: CacheMetrics = Field(default_factory=CacheMetrics)
  memory: MemoryMetrics = Field(default_factory=MemoryMetrics)
  rate_limit: RateLimitMetrics = Field(default_factory=RateLimitMetrics)

  model_config = {
    **CamelModel.model_config,
    'frozen': True,
  }
