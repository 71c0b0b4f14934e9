from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Patient',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=200)),
                ('is_archived', models.BooleanField(default=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'ordering': ['name'],
            },
        ),
        migrations.CreateModel(
            name='RecurringSchedule',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('frequency', models.CharField(choices=[('daily', 'Daily'), ('weekly', 'Weekly'), ('biweekly', 'Biweekly'), ('monthly', 'Monthly'), ('custom', 'Custom')], default='weekly', max_length=20)),
                ('interval', models.PositiveIntegerField(default=1)),
                ('days_of_week', models.JSONField(blank=True, default=list, help_text='Days of week for sessions (0=Sunday, 6=Saturday)')),
                ('days_of_month', models.JSONField(blank=True, default=list, help_text='Days of month (monthly patterns, informational)')),
                ('sessions_per_cycle', models.PositiveIntegerField(default=1)),
                ('start_date', models.DateField(help_text='First date this schedule is active')),
                ('start_time', models.TimeField(help_text='Time of day for the sessions')),
                ('duration_minutes', models.PositiveIntegerField(default=50)),
                ('session_type', models.CharField(choices=[('individual', 'Individual'), ('couple', 'Couple'), ('group', 'Group'), ('online', 'Online')], default='individual', max_length=20)),
                ('session_value', models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ('is_active', models.BooleanField(default=True, help_text='Whether this schedule is currently active')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('patient', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='schedules', to='scheduling.patient')),
            ],
            options={
                'ordering': ['id'],
                'indexes': [models.Index(fields=['patient', 'is_active'], name='sched_patient_active_idx')],
                'constraints': [models.UniqueConstraint(condition=models.Q(('is_active', True)), fields=('patient',), name='one_active_schedule_per_patient')],
            },
        ),
        migrations.CreateModel(
            name='Session',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('scheduled_at', models.DateTimeField()),
                ('duration_minutes', models.PositiveIntegerField(default=50)),
                ('session_type', models.CharField(choices=[('individual', 'Individual'), ('couple', 'Couple'), ('group', 'Group'), ('online', 'Online')], default='individual', max_length=20)),
                ('value', models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ('status', models.CharField(choices=[('scheduled', 'Scheduled'), ('confirmed', 'Confirmed'), ('completed', 'Completed'), ('canceled', 'Canceled')], default='scheduled', max_length=20)),
                ('paid', models.BooleanField(default=False)),
                ('origin', models.CharField(choices=[('recurring', 'Recurring'), ('manual', 'Manual')], default='manual', max_length=20)),
                ('notes', models.TextField(blank=True, default='')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('patient', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='sessions', to='scheduling.patient')),
                ('schedule', models.ForeignKey(blank=True, help_text='Schedule that produced this session (required for recurring sessions)', null=True, on_delete=django.db.models.deletion.PROTECT, related_name='sessions', to='scheduling.recurringschedule')),
            ],
            options={
                'ordering': ['scheduled_at'],
                'indexes': [
                    models.Index(fields=['schedule', 'origin', 'scheduled_at'], name='session_sched_origin_at_idx'),
                    models.Index(fields=['patient', 'scheduled_at'], name='session_patient_at_idx'),
                ],
                'constraints': [models.CheckConstraint(condition=models.Q(('origin', 'recurring'), ('schedule__isnull', True), _negated=True), name='recurring_session_has_schedule')],
            },
        ),
    ]
