import uuid

from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="KeyValueEntry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("namespace", models.CharField(max_length=64)),
                ("key", models.CharField(max_length=200)),
                ("value", models.TextField()),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "storefront_kv",
            },
        ),
        migrations.AddConstraint(
            model_name="keyvalueentry",
            constraint=models.UniqueConstraint(fields=("namespace", "key"), name="ux_storefront_kv_namespace_key"),
        ),
        migrations.CreateModel(
            name="ReconciliationIssue",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("attempt_id", models.CharField(db_index=True, max_length=64)),
                ("intent_id", models.CharField(blank=True, default="", max_length=128)),
                (
                    "stage",
                    models.CharField(
                        choices=[("STOCK_UPDATING", "Stock Updating"), ("NOTIFYING", "Notifying")],
                        max_length=32,
                    ),
                ),
                ("detail", models.TextField()),
                ("payload", models.JSONField(default=dict)),
                ("resolved", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "db_table": "storefront_reconciliation_issues",
                "ordering": ["-created_at"],
            },
        ),
    ]
