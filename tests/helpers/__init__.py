from .fakes import FakeBrowserSession, FakeClock
from .metric_delta import histogram_observes, metric_delta, metric_value

__all__ = ["FakeBrowserSession", "FakeClock", "histogram_observes", "metric_delta", "metric_value"]
