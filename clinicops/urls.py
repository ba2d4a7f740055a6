from django.urls import path

from .views import (
    CronProcessStepsView,
    CronRemindersView,
    EhrExportView,
    EhrImportView,
    EhrLogsView,
    EhrSyncView,
    EhrTestConnectionView,
    ReconcilePreviewView,
    ReconcileView,
    ReminderRuleDetailView,
    ReminderRuleListView,
    ScenarioEnrollView,
    ScenarioFlowView,
    SendReminderView,
)

urlpatterns = [
    path('scenarios/<int:scenario_id>/flow/', ScenarioFlowView.as_view(), name='scenario-flow'),
    path('scenarios/<int:scenario_id>/enroll/', ScenarioEnrollView.as_view(), name='scenario-enroll'),
    path('bank-transfer/reconcile/', ReconcileView.as_view(), name='reconcile'),
    path('bank-transfer/reconcile/preview/', ReconcilePreviewView.as_view(), name='reconcile-preview'),
    path('reminder-rules/', ReminderRuleListView.as_view(), name='reminder-rules'),
    path('reminder-rules/<int:rule_id>/', ReminderRuleDetailView.as_view(), name='reminder-rule-detail'),
    path('reservations/send-reminder/', SendReminderView.as_view(), name='send-reminder'),
    path('cron/reminders/', CronRemindersView.as_view(), name='cron-reminders'),
    path('cron/process-steps/', CronProcessStepsView.as_view(), name='cron-process-steps'),
    path('ehr/test-connection/', EhrTestConnectionView.as_view(), name='ehr-test-connection'),
    path('ehr/sync/', EhrSyncView.as_view(), name='ehr-sync'),
    path('ehr/import/', EhrImportView.as_view(), name='ehr-import'),
    path('ehr/export/', EhrExportView.as_view(), name='ehr-export'),
    path('ehr/logs/', EhrLogsView.as_view(), name='ehr-logs'),
]
