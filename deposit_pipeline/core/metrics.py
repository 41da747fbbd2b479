from prometheus_client import Counter, Histogram

# broker metrics
messages_published_total = Counter(
    "deposit_messages_published_total",
    "Total number of envelopes published",
    ["kind"],
)

messages_consumed_total = Counter(
    "deposit_messages_consumed_total",
    "Total number of envelopes consumed",
    ["outcome"],
)

messages_retried_total = Counter(
    "deposit_messages_retried_total",
    "Number of messages sent to the retry exchange",
)

messages_dead_lettered_total = Counter(
    "deposit_messages_dead_lettered_total",
    "Number of messages sent to the dead-letter exchange",
    ["exception_type"],
)

source_files_total = Counter(
    "deposit_source_files_total",
    "Source files read by the publisher",
    ["status"],
)

# classification metrics
transactions_classified_total = Counter(
    "deposit_transactions_classified_total",
    "Total number of classified transactions",
    ["result", "reason"],
)

# database metrics
batch_flush_duration_seconds = Histogram(
    "deposit_batch_flush_duration_seconds",
    "Time taken to persist a pending batch",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

deposits_inserted_total = Counter(
    "deposits_inserted_total",
    "Valid deposits actually inserted (conflicts excluded)",
)

pending_entries_quarantined_total = Counter(
    "deposit_pending_entries_quarantined_total",
    "Acknowledged entries dropped because storage refused them on their own",
)
