import django.contrib.auth.models
import django.contrib.auth.validators
import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('auth', '0012_alter_user_first_name_max_length'),
    ]

    operations = [
        migrations.CreateModel(
            name='User',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('password', models.CharField(max_length=128, verbose_name='password')),
                ('last_login', models.DateTimeField(blank=True, null=True, verbose_name='last login')),
                ('is_superuser', models.BooleanField(default=False, help_text='Designates that this user has all permissions without explicitly assigning them.', verbose_name='superuser status')),
                ('username', models.CharField(error_messages={'unique': 'A user with that username already exists.'}, help_text='Required. 150 characters or fewer. Letters, digits and @/./+/-/_ only.', max_length=150, unique=True, validators=[django.contrib.auth.validators.UnicodeUsernameValidator()], verbose_name='username')),
                ('first_name', models.CharField(blank=True, max_length=150, verbose_name='first name')),
                ('last_name', models.CharField(blank=True, max_length=150, verbose_name='last name')),
                ('email', models.EmailField(blank=True, max_length=254, verbose_name='email address')),
                ('is_staff', models.BooleanField(default=False, help_text='Designates whether the user can log into this admin site.', verbose_name='staff status')),
                ('is_active', models.BooleanField(default=True, help_text='Designates whether this user should be treated as active. Unselect this instead of deleting accounts.', verbose_name='active')),
                ('date_joined', models.DateTimeField(default=django.utils.timezone.now, verbose_name='date joined')),
                ('role', models.CharField(choices=[('viewer', 'Viewer'), ('technician', 'Lab Technician'), ('lab_admin', 'Lab Administrator'), ('super', 'Super Administrator')], default='viewer', max_length=16)),
                ('groups', models.ManyToManyField(blank=True, help_text='The groups this user belongs to. A user will get all permissions granted to each of their groups.', related_name='user_set', related_query_name='user', to='auth.group', verbose_name='groups')),
                ('user_permissions', models.ManyToManyField(blank=True, help_text='Specific permissions for this user.', related_name='user_set', related_query_name='user', to='auth.permission', verbose_name='user permissions')),
            ],
            options={
                'verbose_name': 'user',
                'verbose_name_plural': 'users',
                'abstract': False,
            },
            managers=[
                ('objects', django.contrib.auth.models.UserManager()),
            ],
        ),
        migrations.CreateModel(
            name='LabTest',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('code', models.CharField(max_length=64, unique=True)),
                ('name', models.CharField(max_length=255)),
                ('unit', models.CharField(blank=True, max_length=64)),
                ('is_active', models.BooleanField(default=True)),
            ],
        ),
        migrations.CreateModel(
            name='LabDevice',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('code', models.CharField(max_length=50, unique=True)),
                ('name', models.CharField(max_length=255)),
                ('protocol', models.CharField(choices=[('astm', 'ASTM'), ('hl7', 'HL7'), ('json', 'JSON')], default='astm', max_length=16)),
                ('connection_type', models.CharField(choices=[('rs232', 'RS232'), ('tcp_ip', 'TCP/IP'), ('file_drop', 'File drop'), ('manual', 'Manual')], default='tcp_ip', max_length=16)),
                ('location', models.CharField(blank=True, max_length=255)),
                ('manufacturer', models.CharField(blank=True, max_length=255)),
                ('model', models.CharField(blank=True, max_length=255)),
                ('api_key_hash', models.CharField(blank=True, max_length=255)),
                ('is_active', models.BooleanField(db_index=True, default=True)),
                ('last_seen_at', models.DateTimeField(blank=True, null=True)),
                ('last_error_at', models.DateTimeField(blank=True, null=True)),
                ('last_error', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.CreateModel(
            name='LabDeviceChannel',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('external_test_code', models.CharField(max_length=64)),
                ('external_test_name', models.CharField(blank=True, max_length=255)),
                ('default_unit', models.CharField(blank=True, max_length=64)),
                ('reference_range', models.CharField(blank=True, max_length=255)),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('device', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='channels', to='lis.labdevice')),
                ('lis_test', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='channels', to='lis.labtest')),
            ],
            options={
                'indexes': [
                    models.Index(fields=['device', 'external_test_code'], name='lis_channel_dev_code_idx'),
                    models.Index(fields=['device', 'is_active'], name='lis_channel_dev_active_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='LabDeviceMessageLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('direction', models.CharField(choices=[('in', 'inbound'), ('out', 'outbound')], default='in', max_length=8)),
                ('source_ip', models.GenericIPAddressField(blank=True, null=True)),
                ('source_port', models.PositiveIntegerField(blank=True, null=True)),
                ('raw_payload', models.TextField()),
                ('truncated', models.BooleanField(default=False)),
                ('sample_ids', models.JSONField(blank=True, default=list)),
                ('row_count', models.PositiveIntegerField(default=0)),
                ('status', models.CharField(choices=[('received', 'received'), ('parsed', 'parsed'), ('partial', 'partial'), ('error', 'error')], default='received', max_length=16)),
                ('error_message', models.TextField(blank=True)),
                ('info_message', models.CharField(blank=True, max_length=255)),
                ('created_at', models.DateTimeField(auto_now_add=True, db_index=True)),
                ('device', models.ForeignKey(null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='message_logs', to='lis.labdevice')),
            ],
            options={
                'indexes': [models.Index(fields=['device', 'created_at'], name='lis_msglog_dev_created_idx')],
            },
        ),
        migrations.CreateModel(
            name='LabDeviceResult',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('sample_id', models.CharField(blank=True, db_index=True, max_length=64)),
                ('external_test_code', models.CharField(blank=True, max_length=64)),
                ('external_test_name', models.CharField(blank=True, max_length=255)),
                ('result_value', models.CharField(blank=True, max_length=255)),
                ('unit', models.CharField(blank=True, max_length=64)),
                ('reference_range', models.CharField(blank=True, max_length=255)),
                ('flag', models.CharField(blank=True, max_length=16)),
                ('measured_at', models.DateTimeField(blank=True, null=True)),
                ('received_at', models.DateTimeField(auto_now_add=True)),
                ('status', models.CharField(choices=[('staging', 'staging'), ('mapped', 'mapped'), ('posted', 'posted'), ('error', 'error')], db_index=True, default='staging', max_length=16)),
                ('error_message', models.TextField(blank=True)),
                ('lis_test_id', models.BigIntegerField(blank=True, db_index=True, null=True)),
                ('lis_order_id', models.BigIntegerField(blank=True, db_index=True, null=True)),
                ('lis_order_item_id', models.BigIntegerField(blank=True, null=True)),
                ('patient_id', models.CharField(blank=True, max_length=64, null=True)),
                ('posted_at', models.DateTimeField(blank=True, null=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('device', models.ForeignKey(null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='results', to='lis.labdevice')),
                ('message_log', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='results', to='lis.labdevicemessagelog')),
            ],
            options={
                'indexes': [
                    models.Index(fields=['device', 'status'], name='lis_result_dev_status_idx'),
                    models.Index(fields=['device', 'received_at'], name='lis_result_dev_recv_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='LabOrder',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('patient_id', models.CharField(db_index=True, max_length=64)),
                ('sample_id', models.CharField(db_index=True, max_length=64)),
                ('status', models.CharField(choices=[('ordered', 'Ordered'), ('collected', 'Collected'), ('in_progress', 'In progress'), ('completed', 'Completed'), ('cancelled', 'Cancelled')], default='ordered', max_length=16)),
                ('ordered_at', models.DateTimeField(auto_now_add=True)),
            ],
        ),
        migrations.CreateModel(
            name='LabOrderItem',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('resulted', 'Resulted'), ('finalized', 'Finalized')], default='pending', max_length=16)),
                ('result_value', models.CharField(blank=True, max_length=255)),
                ('unit', models.CharField(blank=True, max_length=64)),
                ('flag', models.CharField(blank=True, max_length=16)),
                ('reference_range', models.CharField(blank=True, max_length=255)),
                ('resulted_at', models.DateTimeField(blank=True, null=True)),
                ('source_result_id', models.BigIntegerField(blank=True, null=True)),
                ('order', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='items', to='lis.laborder')),
                ('test', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='order_items', to='lis.labtest')),
            ],
            options={
                'indexes': [models.Index(fields=['order', 'test'], name='lis_orderitem_order_test_idx')],
            },
        ),
        migrations.CreateModel(
            name='AuditEvent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('action', models.CharField(max_length=64)),
                ('object_type', models.CharField(blank=True, max_length=64, null=True)),
                ('object_id', models.CharField(blank=True, max_length=64, null=True)),
                ('detail', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('user', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'indexes': [
                    models.Index(fields=['action', 'created_at'], name='lis_audit_action_created_idx'),
                    models.Index(fields=['object_type', 'object_id', 'created_at'], name='lis_audit_object_idx'),
                ],
            },
        ),
    ]
