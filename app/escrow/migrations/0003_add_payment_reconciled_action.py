from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("escrow", "0002_add_periodic_schedules"),
    ]

    operations = [
        migrations.AlterField(
            model_name="paymentauditentry",
            name="action",
            field=models.CharField(
                choices=[
                    ("payment_initiated", "Payment Initiated"),
                    ("payment_held", "Payment Held"),
                    ("payment_failed", "Payment Failed"),
                    ("payment_released", "Payment Released"),
                    ("payment_refunded", "Payment Refunded"),
                    ("dispute_raised", "Dispute Raised"),
                    ("evidence_added", "Evidence Added"),
                    ("dispute_resolved", "Dispute Resolved"),
                    ("amount_mismatch", "Amount Mismatch"),
                    ("payment_reconciled", "Payment Reconciled"),
                    ("transition_rejected", "Transition Rejected"),
                    ("disbursement_completed", "Disbursement Completed"),
                    ("disbursement_failed", "Disbursement Failed"),
                    ("settlement_stuck", "Settlement Stuck"),
                    ("cash_settled", "Cash Settled"),
                ],
                db_index=True,
                max_length=40,
            ),
        ),
    ]
