from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='DonorProfile',
            fields=[
                ('id', models.AutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('first_name', models.CharField(blank=True, max_length=64)),
                ('last_name', models.CharField(blank=True, max_length=64)),
                ('address', models.CharField(blank=True, max_length=128)),
                ('city', models.CharField(blank=True, max_length=64)),
                ('state', models.CharField(blank=True, max_length=2)),
                ('zip', models.CharField(blank=True, max_length=10)),
                ('country', models.CharField(default='domestic', help_text="'domestic' for US residents, otherwise the donor's country.", max_length=64)),
                ('passport', models.CharField(blank=True, help_text='A passport or other foreign ID number, required of donors living abroad.', max_length=64)),
                ('is_employed', models.BooleanField(default=False)),
                ('occupation', models.CharField(blank=True, max_length=64)),
                ('employer', models.CharField(blank=True, max_length=64)),
                ('compliance', models.CharField(choices=[('guest', 'Guest'), ('compliant', 'Compliant')], default='guest', help_text="The donor's compliance tier. Only ever promoted.", max_length=16)),
                ('created', models.DateTimeField(auto_now_add=True)),
                ('updated', models.DateTimeField(auto_now=True)),
                ('user', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='donor_profile', to=settings.AUTH_USER_MODEL)),
            ],
        ),
    ]
