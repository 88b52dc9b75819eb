from prometheus_client import Counter


reminders_created_total = Counter(
    "reminders_created_total",
    "Total reminders created via API",
)

scheduler_scans_total = Counter(
    "reminder_scheduler_scans_total",
    "Total scheduler scan cycles",
)

scheduler_claimed_total = Counter(
    "reminder_scheduler_claimed_total",
    "Total reminders claimed for dispatch by scheduler",
)

reminders_dispatch_success_total = Counter(
    "reminders_dispatch_success_total",
    "Total successful notification dispatches",
    ["method"],
)

reminders_dispatch_failed_total = Counter(
    "reminders_dispatch_failed_total",
    "Total failed notification dispatches",
    ["method"],
)

occurrences_spawned_total = Counter(
    "reminder_occurrences_spawned_total",
    "Total recurring occurrences created by scheduler",
)

scheduler_errors_total = Counter(
    "reminder_scheduler_errors_total",
    "Total scheduler ticks abandoned because of an error",
)
