"""Prometheus metrics for the application"""
from prometheus_client import Counter, Histogram, REGISTRY


def _get_or_create(metric_cls, name, documentation, labelnames=(), **kwargs):
    # Re-imports (uvicorn reload, tests) would otherwise raise a duplicate timeseries error
    try:
        return metric_cls(name, documentation, labelnames, **kwargs)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Job lifecycle metrics
video_jobs_created_counter = _get_or_create(
    Counter,
    'promoreel_video_jobs_created_total',
    'Total number of video jobs admitted'
)

video_jobs_finished_counter = _get_or_create(
    Counter,
    'promoreel_video_jobs_finished_total',
    'Total number of video jobs that reached a terminal state',
    ['status', 'failure_stage']
)

admission_rejections_counter = _get_or_create(
    Counter,
    'promoreel_admission_rejections_total',
    'Total number of job creations rejected before any state was written',
    ['reason']
)

# Callback metrics
merge_callbacks_counter = _get_or_create(
    Counter,
    'promoreel_merge_callbacks_total',
    'Total number of merge callbacks received',
    ['result']
)

# Merge worker metrics
merge_runs_counter = _get_or_create(
    Counter,
    'promoreel_merge_runs_total',
    'Total number of merge worker runs',
    ['result', 'stage']
)

merge_duration_histogram = _get_or_create(
    Histogram,
    'promoreel_merge_duration_seconds',
    'Wall-clock time spent merging one job',
    buckets=(5, 15, 30, 60, 120, 300, 600, 900)
)

# Ledger metrics
credits_charged_counter = _get_or_create(
    Counter,
    'promoreel_credits_charged_total',
    'Total number of credits consumed by completed jobs',
    ['pool']
)

credit_resets_counter = _get_or_create(
    Counter,
    'promoreel_credit_resets_total',
    'Total number of monthly credit period rollovers'
)

# Sweeper metrics
stale_jobs_counter = _get_or_create(
    Counter,
    'promoreel_stale_jobs_failed_total',
    'Total number of jobs failed by the stale job sweep',
    ['status']
)
