from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("payments", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="escrow",
            name="release_attempt_count",
            field=models.PositiveIntegerField(default=0),
        ),
    ]
