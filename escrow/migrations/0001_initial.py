from django.conf import settings
from django.db import migrations, models
import django.core.serializers.json
import django.db.models.deletion
import powerback.utils


STATUS_CHOICES = [('active', 'Active'), ('paused', 'Paused'), ('resolved', 'Resolved'), ('defunct', 'Defunct')]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Bill',
            fields=[
                ('id', models.AutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('bill_id', models.CharField(help_text="A bill identifier like 'hjres54-119': the bill type, number, and the Congress.", max_length=32, unique=True)),
                ('title', models.TextField(blank=True, help_text="The bill's title, for display.")),
                ('congress', models.IntegerField(help_text='The Congress the bill was introduced in.')),
                ('created', models.DateTimeField(auto_now_add=True, db_index=True)),
                ('updated', models.DateTimeField(auto_now=True)),
                ('status', models.CharField(choices=[('open', 'Open'), ('triggered', 'Triggered'), ('vacated', 'Vacated')], db_index=True, default='open', help_text='Whether the trigger condition has been met.', max_length=16)),
                ('triggered_at', models.DateTimeField(blank=True, help_text='When the trigger condition was first observed.', null=True)),
                ('extra', powerback.utils.JSONField(blank=True, default=dict, encoder=django.core.serializers.json.DjangoJSONEncoder, help_text='Additional information stored with this object.')),
            ],
        ),
        migrations.CreateModel(
            name='DonorInfo',
            fields=[
                ('id', models.AutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created', models.DateTimeField(auto_now_add=True, db_index=True)),
                ('compliance', models.CharField(help_text="The donor's compliance tier when the snapshot was taken.", max_length=16)),
                ('extra', powerback.utils.JSONField(blank=True, default=dict, encoder=django.core.serializers.json.DjangoJSONEncoder, help_text="The donor's profile fields.")),
            ],
        ),
        migrations.CreateModel(
            name='ElectionDate',
            fields=[
                ('id', models.AutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('state', models.CharField(help_text='The USPS abbreviation of the state.', max_length=2)),
                ('election_year', models.IntegerField(help_text='The year of the general election closing the cycle.')),
                ('election_type', models.CharField(choices=[('P', 'Primary'), ('G', 'General'), ('S', 'Special'), ('R', 'Runoff'), ('GR', 'Generalrunoff'), ('SG', 'Specialgeneral')], max_length=2)),
                ('date', models.DateField()),
                ('extra', powerback.utils.JSONField(blank=True, default=dict, encoder=django.core.serializers.json.DjangoJSONEncoder, help_text="The FEC's record for this election.")),
            ],
            options={
                'unique_together': {('state', 'election_year', 'election_type')},
            },
        ),
        migrations.CreateModel(
            name='Celebration',
            fields=[
                ('id', models.AutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('candidate_id', models.CharField(db_index=True, help_text='The FEC candidate ID of the recipient.', max_length=16)),
                ('candidate_name', models.CharField(blank=True, help_text="The candidate's name, for display.", max_length=128)),
                ('candidate_state', models.CharField(help_text='The state the candidate is running in, which determines their primary date.', max_length=2)),
                ('donation', models.DecimalField(decimal_places=2, help_text='The amount going to the candidate, in dollars.', max_digits=8)),
                ('tip', models.DecimalField(decimal_places=2, default=0, help_text='An optional amount going to our PAC, in dollars.', max_digits=8)),
                ('fee', models.DecimalField(decimal_places=2, default=0, help_text='Processing fees passed on to the donor, in dollars.', max_digits=8)),
                ('authorization_id', models.CharField(db_index=True, help_text="The payment processor's ID for the authorized (uncaptured) charge.", max_length=128)),
                ('idempotency_key', models.CharField(help_text='The client-supplied key that makes creating this record safe to retry.', max_length=128, unique=True)),
                ('current_status', models.CharField(choices=STATUS_CHOICES, db_index=True, default='active', help_text='Mirrors the new_status of the last entry in the status ledger.', max_length=16)),
                ('capture_status', models.CharField(blank=True, choices=[('pending', 'Pending'), ('confirmed', 'Confirmed'), ('failed', 'Failed')], help_text='The outcome of the most recent capture attempt, if any.', max_length=16, null=True)),
                ('charge_id', models.CharField(blank=True, help_text="The payment processor's ID for the captured charge.", max_length=128, null=True)),
                ('created', models.DateTimeField(auto_now_add=True, db_index=True)),
                ('updated', models.DateTimeField(auto_now=True)),
                ('resolved_at', models.DateTimeField(blank=True, help_text='When funds were captured.', null=True)),
                ('defunct_at', models.DateTimeField(blank=True, help_text='When the celebration was given up on.', null=True)),
                ('defunct_reason', models.CharField(blank=True, max_length=256, null=True)),
                ('extra', powerback.utils.JSONField(blank=True, default=dict, encoder=django.core.serializers.json.DjangoJSONEncoder, help_text='Additional information stored with this object.')),
                ('bill', models.ForeignKey(help_text="The bill whose progress releases the funds.", on_delete=django.db.models.deletion.PROTECT, related_name='celebrations', to='escrow.bill')),
                ('donor', models.ForeignKey(help_text='The user making the celebration.', on_delete=django.db.models.deletion.PROTECT, related_name='celebrations', to=settings.AUTH_USER_MODEL)),
                ('donor_info', models.ForeignKey(help_text="The donor's information when the celebration was made. Never changes.", on_delete=django.db.models.deletion.PROTECT, related_name='celebrations', to='escrow.donorinfo')),
            ],
        ),
        migrations.CreateModel(
            name='StatusLedgerEntry',
            fields=[
                ('id', models.AutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('sequence', models.PositiveIntegerField(help_text='0 for the creation entry, incrementing by one.')),
                ('previous_status', models.CharField(blank=True, choices=STATUS_CHOICES, max_length=16, null=True)),
                ('new_status', models.CharField(choices=STATUS_CHOICES, max_length=16)),
                ('timestamp', models.DateTimeField()),
                ('reason', models.CharField(blank=True, max_length=256)),
                ('triggered_by', models.CharField(choices=[('system', 'System'), ('donor', 'Donor'), ('operator', 'Operator'), ('webhook', 'Webhook')], default='system', max_length=16)),
                ('compliance_at_time', models.CharField(blank=True, max_length=16)),
                ('metadata', powerback.utils.JSONField(blank=True, default=dict, encoder=django.core.serializers.json.DjangoJSONEncoder)),
                ('digest', models.CharField(help_text="SHA-256 over this entry and the previous entry's digest.", max_length=64, unique=True)),
                ('celebration', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='status_ledger', to='escrow.celebration')),
            ],
            options={
                'ordering': ['celebration', 'sequence'],
                'unique_together': {('celebration', 'sequence')},
            },
        ),
    ]
