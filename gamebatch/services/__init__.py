"""Services for gamebatch."""
from .archiver import SevenZipArchiver
from .cracker import ExternalCracker
from .link_converter import HTTPLinkConverter, conversion_budget
from .progress import ExponentialAverage, ProgressEstimator, clamp_percent
from .rates import JsonRateStore, RateLearner
from .retry import RetryOutcome, RetryPolicy, RetryStatus, UploadOutcome
from .slots import SlotHandle, UploadSlotPool
from .uploader import HTTPUploader

__all__ = [
    "SevenZipArchiver",
    "ExternalCracker",
    "HTTPLinkConverter",
    "conversion_budget",
    "ExponentialAverage",
    "ProgressEstimator",
    "clamp_percent",
    "JsonRateStore",
    "RateLearner",
    "RetryOutcome",
    "RetryPolicy",
    "RetryStatus",
    "UploadOutcome",
    "SlotHandle",
    "UploadSlotPool",
    "HTTPUploader",
]
