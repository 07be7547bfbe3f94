from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("payments", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="payment",
            name="refund_requested_at",
            field=models.DateTimeField(blank=True, null=True),
        ),
    ]
