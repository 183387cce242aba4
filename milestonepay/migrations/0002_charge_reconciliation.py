from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("milestonepay", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="charge",
            name="idempotency_key",
            field=models.CharField(blank=True, max_length=96, null=True, unique=True),
        ),
        migrations.AddField(
            model_name="charge",
            name="needs_reconciliation",
            field=models.BooleanField(default=False),
        ),
    ]
