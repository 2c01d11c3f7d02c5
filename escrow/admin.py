from django.contrib import admin
from django.utils.html import format_html

from escrow.models import Bill, ElectionDate, DonorInfo, Celebration, StatusLedgerEntry

def no_delete_action(admin):
    class MyClass(admin):
        def get_actions(self, request):
            actions = super(MyClass, self).get_actions(request)
            if 'delete_selected' in actions:
                del actions['delete_selected']
            return actions
        def has_delete_permission(self, request, obj=None):
            return False
    return MyClass

def yaml_field(value):
    import rtyaml
    return format_html("<pre style='font-family: sans-serif;'>{}</pre>", rtyaml.dump(value))

class BillAdmin(admin.ModelAdmin):
    list_display = ['bill_id', 'title', 'status', 'congress', 'triggered_at', 'open_count']
    readonly_fields = ['status', 'triggered_at']
    search_fields = ['bill_id', 'title']
    def open_count(self, obj):
        return obj.celebrations.filter(current_status__in=('active', 'paused')).count()
    open_count.short_description = "Open celebrations"

class ElectionDateAdmin(admin.ModelAdmin):
    list_display = ['state', 'election_year', 'election_type', 'date']
    list_filter = ['election_year', 'election_type']
    search_fields = ['state']

@no_delete_action
class DonorInfoAdmin(admin.ModelAdmin):
    list_display = ['name', 'compliance', 'celebration_count', 'id', 'created']
    readonly_fields = ['compliance', 'extra_']
    fields = readonly_fields
    search_fields = ['id', 'extra']
    def celebration_count(self, obj):
        return obj.celebrations.count()
    def extra_(self, obj):
        return yaml_field(obj.extra)
    extra_.short_description = "Profile"

class StatusLedgerEntryInline(admin.TabularInline):
    model = StatusLedgerEntry
    fields = ['sequence', 'previous_status', 'new_status', 'timestamp', 'reason', 'triggered_by', 'compliance_at_time']
    readonly_fields = fields
    extra = 0
    can_delete = False
    def has_add_permission(self, request, obj=None):
        return False

@no_delete_action
class CelebrationAdmin(admin.ModelAdmin):
    list_display = ['id', 'current_status', 'donor', 'candidate_id', 'bill', 'donation', 'capture_status', 'created']
    list_filter = ['current_status', 'capture_status']
    # Status changes go through the lifecycle, never through the admin.
    readonly_fields = ['donor', 'bill', 'donor_info', 'donation', 'tip', 'fee', 'authorization_id', 'idempotency_key',
        'current_status', 'capture_status', 'charge_id', 'resolved_at', 'defunct_at', 'defunct_reason', 'ledger_ok']
    search_fields = ['id', 'donor__email', 'candidate_id', 'candidate_name', 'authorization_id', 'idempotency_key'] \
      + ['bill__'+f for f in BillAdmin.search_fields]
    inlines = [StatusLedgerEntryInline]
    def ledger_ok(self, obj):
        from escrow.errors import LedgerIntegrityError
        try:
            return obj.verify_ledger()
        except LedgerIntegrityError as e:
            return str(e)
    ledger_ok.short_description = "Ledger verified"

admin.site.register(Bill, BillAdmin)
admin.site.register(ElectionDate, ElectionDateAdmin)
admin.site.register(DonorInfo, DonorInfoAdmin)
admin.site.register(Celebration, CelebrationAdmin)
