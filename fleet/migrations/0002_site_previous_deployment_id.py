from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('fleet', '0001_initial'),
    ]

    operations = [
        migrations.AddField(
            model_name='site',
            name='previous_deployment_id',
            field=models.CharField(blank=True, max_length=255),
        ),
    ]
