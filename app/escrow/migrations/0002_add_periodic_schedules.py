"""
Add celery-beat schedules for the escrow workers.

Creates the periodic tasks that auto-release completed holds, retry
pending disbursements, and re-apply or reset failed webhook events.
"""

from django.db import migrations

PERIODIC_TASKS = [
    {
        "name": "Release Completed Escrow Holds",
        "task": "escrow.workers.hold_manager.release_completed_holds",
        "every": 15,
        "description": (
            "Releases held payments whose delivery completed longer ago than "
            "ESCROW_AUTO_RELEASE_HOURS and that are not disputed."
        ),
    },
    {
        "name": "Retry Pending Escrow Disbursements",
        "task": "escrow.workers.disbursement_executor.retry_pending_disbursements",
        "every": 5,
        "description": (
            "Re-attempts pending transfers and refunds with their stored idempotency "
            "keys and raises the stuck-settlement alert after the attempt limit."
        ),
    },
    {
        "name": "Retry Failed Stripe Webhooks",
        "task": "escrow.tasks.retry_failed_webhooks",
        "every": 10,
        "description": "Re-applies failed webhook events below the retry limit.",
    },
    {
        "name": "Reset Stuck Stripe Webhooks",
        "task": "escrow.tasks.cleanup_stuck_webhooks",
        "every": 30,
        "description": "Marks webhook events stuck in processing as failed.",
    },
]


def create_periodic_tasks(apps, schema_editor):
    """Create the periodic tasks for the escrow workers."""
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    for entry in PERIODIC_TASKS:
        schedule, _ = IntervalSchedule.objects.get_or_create(
            every=entry["every"],
            period="minutes",
        )
        PeriodicTask.objects.get_or_create(
            name=entry["name"],
            defaults={
                "task": entry["task"],
                "interval": schedule,
                "enabled": True,
                "description": entry["description"],
            },
        )


def remove_periodic_tasks(apps, schema_editor):
    """Remove the periodic tasks on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(
        name__in=[entry["name"] for entry in PERIODIC_TASKS],
    ).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("escrow", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]
