from prometheus_client import Counter

fraud_attempts = Counter(
    "nomaqbank_exam_fraud_attempts_total",
    "Answers submitted for questions locked by the exam pause",
)
sweep_closed = Counter(
    "nomaqbank_sweep_closed_total",
    "Sessions closed by the background sweeps",
    ["kind"],
)
sweep_failures = Counter(
    "nomaqbank_sweep_failures_total",
    "Sessions the background sweeps failed to close",
    ["kind"],
)
payment_events = Counter(
    "nomaqbank_payment_events_total",
    "Processor confirmations by outcome",
    ["kind", "outcome"],
)
