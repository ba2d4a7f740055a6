from django.db import models


class TenantModel(models.Model):
    """所有业务表都带 tenant_id。None 表示单租户默认。"""

    tenant_id = models.CharField(max_length=64, blank=True, null=True, db_index=True)

    class Meta:
        abstract = True


# ── 患者 ────────────────────────────────────────────────────────────────────

class Patient(TenantModel):
    patient_id = models.CharField(max_length=64, db_index=True)
    name = models.CharField(max_length=200, blank=True, default='')
    name_kana = models.CharField(max_length=200, blank=True, default='')
    sex = models.CharField(max_length=20, blank=True, default='')
    birthday = models.CharField(max_length=10, blank=True, default='')
    tel = models.CharField(max_length=20, blank=True, default='')
    postal_code = models.CharField(max_length=10, blank=True, default='')
    address = models.CharField(max_length=500, blank=True, default='')
    line_id = models.CharField(max_length=64, blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'patients'
        constraints = [
            models.UniqueConstraint(fields=['tenant_id', 'patient_id'], name='uniq_patient'),
        ]


class PatientTag(TenantModel):
    patient_id = models.CharField(max_length=64, db_index=True)
    tag_id = models.IntegerField()
    assigned_by = models.CharField(max_length=50, blank=True, default='')
    assigned_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'patient_tags'
        constraints = [
            models.UniqueConstraint(fields=['tenant_id', 'patient_id', 'tag_id'], name='uniq_patient_tag'),
        ]


class PatientMark(TenantModel):
    patient_id = models.CharField(max_length=64, db_index=True)
    mark = models.CharField(max_length=50)
    updated_by = models.CharField(max_length=50, blank=True, default='')
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'patient_marks'
        constraints = [
            models.UniqueConstraint(fields=['tenant_id', 'patient_id'], name='uniq_patient_mark'),
        ]


class Intake(TenantModel):
    """问诊记录。answers 是以日文字段名为 key 的自由格式回答，note 是病历正文。"""

    patient_id = models.CharField(max_length=64, db_index=True)
    answers = models.JSONField(default=dict, blank=True)
    note = models.TextField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'intake'


class Reservation(TenantModel):
    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('confirmed', 'Confirmed'),
        ('canceled', 'Canceled'),
    ]

    reserve_id = models.CharField(max_length=64)
    patient_id = models.CharField(max_length=64, db_index=True)
    reserved_date = models.DateField()
    reserved_time = models.CharField(max_length=8)  # "HH:MM:SS"
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending')

    class Meta:
        db_table = 'reservations'
        constraints = [
            models.UniqueConstraint(fields=['tenant_id', 'reserve_id'], name='uniq_reservation'),
        ]


# ── 提醒 ────────────────────────────────────────────────────────────────────

class ReminderRule(TenantModel):
    TIMING_CHOICES = [
        ('fixed_time', 'Fixed time'),
        ('before_hours', 'Before hours'),
    ]
    FORMAT_CHOICES = [
        ('text', 'Text'),
        ('flex', 'Flex'),
    ]

    name = models.CharField(max_length=200)
    is_enabled = models.BooleanField(default=True)
    timing_type = models.CharField(max_length=20, choices=TIMING_CHOICES, default='fixed_time')
    send_hour = models.PositiveSmallIntegerField(default=19)
    send_minute = models.PositiveSmallIntegerField(default=0)
    target_day_offset = models.IntegerField(default=1)
    message_format = models.CharField(max_length=10, choices=FORMAT_CHOICES, default='text')
    message_template = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'reminder_rules'


class ReminderSentLog(TenantModel):
    """幂等保护：同一规则 × 同一预约 × 同一天（JST）最多一条。"""

    rule = models.ForeignKey(ReminderRule, on_delete=models.CASCADE, related_name='sent_logs')
    reservation_id = models.CharField(max_length=64)
    patient_id = models.CharField(max_length=64, blank=True, default='')
    sent_date = models.DateField()
    sent_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'reminder_sent_log'
        constraints = [
            models.UniqueConstraint(
                fields=['rule', 'reservation_id', 'sent_date'],
                name='uniq_reminder_per_rule_reservation_day',
            ),
        ]


class MessageLog(TenantModel):
    patient_id = models.CharField(max_length=64, blank=True, default='')
    line_uid = models.CharField(max_length=64, blank=True, default='')
    event_type = models.CharField(max_length=30)
    message_type = models.CharField(max_length=30)
    content = models.TextField(blank=True, default='')
    status = models.CharField(max_length=20)
    campaign_id = models.CharField(max_length=64, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'message_log'


class TenantSetting(TenantModel):
    category = models.CharField(max_length=50)
    key = models.CharField(max_length=100)
    value = models.TextField(blank=True, default='')

    class Meta:
        db_table = 'tenant_settings'
        constraints = [
            models.UniqueConstraint(fields=['tenant_id', 'category', 'key'], name='uniq_tenant_setting'),
        ]


# ── 步骤场景 ────────────────────────────────────────────────────────────────

class StepScenario(TenantModel):
    TRIGGER_CHOICES = [
        ('follow', 'Follow'),
        ('tag', 'Tag'),
        ('keyword', 'Keyword'),
        ('manual', 'Manual'),
    ]
    KEYWORD_MATCH_CHOICES = [
        ('exact', 'Exact'),
        ('partial', 'Partial'),
        ('regex', 'Regex'),
    ]

    name = models.CharField(max_length=200)
    is_enabled = models.BooleanField(default=True)
    trigger_type = models.CharField(max_length=20, choices=TRIGGER_CHOICES, default='manual')
    trigger_tag_id = models.IntegerField(blank=True, null=True)
    trigger_keyword = models.CharField(max_length=200, blank=True, default='')
    keyword_match = models.CharField(max_length=10, choices=KEYWORD_MATCH_CHOICES, default='exact')
    total_enrolled = models.IntegerField(default=0)
    total_completed = models.IntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'step_scenarios'


class StepItem(TenantModel):
    DELAY_CHOICES = [
        ('days', 'Days'),
        ('hours', 'Hours'),
        ('minutes', 'Minutes'),
    ]
    STEP_TYPE_CHOICES = [
        ('send_text', 'Send text'),
        ('send_template', 'Send template'),
        ('tag_add', 'Tag add'),
        ('tag_remove', 'Tag remove'),
        ('mark_change', 'Mark change'),
        ('condition', 'Condition'),
    ]

    scenario = models.ForeignKey(StepScenario, on_delete=models.CASCADE, related_name='items')
    sort_order = models.IntegerField()
    delay_type = models.CharField(max_length=10, choices=DELAY_CHOICES, default='days')
    delay_value = models.PositiveIntegerField(default=1)
    send_time = models.CharField(max_length=5, blank=True, null=True)  # "HH:MM"
    step_type = models.CharField(max_length=20, choices=STEP_TYPE_CHOICES, default='send_text')
    content = models.TextField(blank=True, null=True)
    template_id = models.IntegerField(blank=True, null=True)
    tag_id = models.IntegerField(blank=True, null=True)
    mark = models.CharField(max_length=50, blank=True, null=True)
    condition_rules = models.JSONField(default=list, blank=True)
    branch_true_step = models.IntegerField(blank=True, null=True)
    branch_false_step = models.IntegerField(blank=True, null=True)
    exit_condition_rules = models.JSONField(default=list, blank=True)
    exit_action = models.CharField(max_length=10, default='exit')
    exit_jump_to = models.IntegerField(blank=True, null=True)

    class Meta:
        db_table = 'step_items'
        ordering = ['sort_order']


class StepEnrollment(TenantModel):
    STATUS_CHOICES = [
        ('active', 'Active'),
        ('completed', 'Completed'),
        ('exited', 'Exited'),
        ('paused', 'Paused'),
    ]

    scenario = models.ForeignKey(StepScenario, on_delete=models.CASCADE, related_name='enrollments')
    patient_id = models.CharField(max_length=64, db_index=True)
    line_uid = models.CharField(max_length=64, blank=True, null=True)
    current_step_order = models.IntegerField(default=0)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='active')
    next_send_at = models.DateTimeField(blank=True, null=True, db_index=True)
    enrolled_at = models.DateTimeField(auto_now_add=True)
    completed_at = models.DateTimeField(blank=True, null=True)
    exited_at = models.DateTimeField(blank=True, null=True)
    exit_reason = models.CharField(max_length=200, blank=True, default='')

    class Meta:
        db_table = 'step_enrollments'
        constraints = [
            models.UniqueConstraint(fields=['scenario', 'patient_id'], name='uniq_enrollment'),
        ]


# ── 订单（银行转账照合） ─────────────────────────────────────────────────────

class Order(TenantModel):
    STATUS_CHOICES = [
        ('pending_confirmation', 'Pending confirmation'),
        ('confirmed', 'Confirmed'),
        ('canceled', 'Canceled'),
    ]

    patient_id = models.CharField(max_length=64, db_index=True)
    product_code = models.CharField(max_length=64)
    amount = models.IntegerField()  # 日元，最小货币单位
    payment_method = models.CharField(max_length=20, default='bank_transfer')
    account_name = models.CharField(max_length=200, blank=True, default='')
    shipping_name = models.CharField(max_length=200, blank=True, default='')
    status = models.CharField(max_length=30, choices=STATUS_CHOICES, default='pending_confirmation')
    payment_id = models.CharField(max_length=64, blank=True, null=True, unique=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'orders'
        ordering = ['created_at', 'id']


# ── 电子病历同步 ────────────────────────────────────────────────────────────

class EhrPatientMapping(TenantModel):
    patient_id = models.CharField(max_length=64)
    provider = models.CharField(max_length=10)
    external_id = models.CharField(max_length=64)
    last_synced_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'ehr_patient_mappings'
        constraints = [
            models.UniqueConstraint(
                fields=['tenant_id', 'provider', 'external_id'],
                name='uniq_ehr_mapping',
            ),
        ]


class EhrSyncLog(TenantModel):
    STATUS_CHOICES = [
        ('success', 'Success'),
        ('error', 'Error'),
        ('skipped', 'Skipped'),
    ]

    provider = models.CharField(max_length=10)
    direction = models.CharField(max_length=10)  # push / pull
    resource_type = models.CharField(max_length=10)  # patient / karte
    patient_id = models.CharField(max_length=64, blank=True, null=True)
    external_id = models.CharField(max_length=64, blank=True, null=True)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES)
    detail = models.TextField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'ehr_sync_logs'


class MessageTemplate(TenantModel):
    """send_template 步骤引用的消息模板。"""

    name = models.CharField(max_length=200)
    content = models.TextField(blank=True, default='')
    message_type = models.CharField(max_length=20, default='text')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'message_templates'
