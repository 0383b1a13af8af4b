from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('lis', '0001_initial'),
    ]

    operations = [
        migrations.AddField(
            model_name='labdeviceresult',
            name='parse_failed',
            field=models.BooleanField(default=False),
        ),
    ]
