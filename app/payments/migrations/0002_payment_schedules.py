"""
Add celery-beat schedules for the payment background jobs.

Creates crontab schedules and periodic tasks for:
- Daily gateway reconciliation (02:00 UTC)
- Hourly overdue-installment sweep and auto-charge
- Installment reminders every 6 hours
- Webhook retries every 10 minutes and a stuck-row reset every 15
- Daily retention cleanup of reports and webhook rows
"""

from django.db import migrations

PERIODIC_TASKS = [
    {
        "name": "Daily Payment Reconciliation",
        "task": "payments.tasks.run_daily_reconciliation",
        "crontab": {"minute": "0", "hour": "2"},
        "description": "Reconciles yesterday's payments against every configured gateway.",
    },
    {
        "name": "Sweep Overdue Installments",
        "task": "payments.tasks.sweep_overdue_installments",
        "crontab": {"minute": "5", "hour": "*"},
        "description": "Marks due installments past their due date as overdue.",
    },
    {
        "name": "Charge Due Installments",
        "task": "payments.tasks.charge_due_installments",
        "crontab": {"minute": "15", "hour": "*"},
        "description": "Auto-charges due installments on plans with a saved payment method.",
    },
    {
        "name": "Send Installment Reminders",
        "task": "payments.tasks.send_installment_reminders",
        "crontab": {"minute": "30", "hour": "*/6"},
        "description": "Sends reminders for installments due soon, per the reminder policy.",
    },
    {
        "name": "Retry Failed Webhooks",
        "task": "payments.tasks.retry_failed_webhooks",
        "crontab": {"minute": "*/10", "hour": "*"},
        "description": "Re-applies failed webhook deliveries from their stored payload.",
    },
    {
        "name": "Reset Stuck Webhooks",
        "task": "payments.tasks.cleanup_stuck_webhooks",
        "crontab": {"minute": "*/15", "hour": "*"},
        "description": "Marks deliveries left in processing by a crashed worker as failed.",
    },
    {
        "name": "Cleanup Old Reconciliation Reports",
        "task": "payments.tasks.cleanup_old_reconciliation_reports",
        "crontab": {"minute": "0", "hour": "4"},
        "description": "Deletes reconciliation reports past the retention window.",
    },
    {
        "name": "Cleanup Old Webhook Events",
        "task": "payments.tasks.cleanup_old_webhooks",
        "crontab": {"minute": "30", "hour": "4"},
        "description": "Deletes processed webhook rows past the retention window.",
    },
]


def create_periodic_tasks(apps, schema_editor):
    CrontabSchedule = apps.get_model("django_celery_beat", "CrontabSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    for spec in PERIODIC_TASKS:
        schedule, _ = CrontabSchedule.objects.get_or_create(
            minute=spec["crontab"]["minute"],
            hour=spec["crontab"]["hour"],
            day_of_week="*",
            day_of_month="*",
            month_of_year="*",
            timezone="UTC",
        )
        PeriodicTask.objects.get_or_create(
            name=spec["name"],
            defaults={
                "task": spec["task"],
                "crontab": schedule,
                "enabled": True,
                "description": spec["description"],
            },
        )


def remove_periodic_tasks(apps, schema_editor):
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(
        name__in=[spec["name"] for spec in PERIODIC_TASKS],
    ).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("payments", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]
