from django.contrib import admin

from powerback.models import DonorProfile

class DonorProfileAdmin(admin.ModelAdmin):
    list_display = ['user', 'first_name', 'last_name', 'state', 'compliance', 'updated']
    list_filter = ['compliance']
    readonly_fields = ['compliance'] # only ever set from the profile fields
    raw_id_fields = ['user']
    search_fields = ['user__email', 'first_name', 'last_name']

admin.site.register(DonorProfile, DonorProfileAdmin)
