from django.urls import path

from escrow import views

urlpatterns = [
	path('api/celebrations', views.celebrations, name='celebrations'),
	path('api/celebrations/<int:celebration_id>', views.celebration, name='celebration'),
	path('api/celebrations/<int:celebration_id>/pause', views.pause_celebration, name='pause_celebration'),
	path('api/celebrations/<int:celebration_id>/resume', views.resume_celebration, name='resume_celebration'),
	path('api/limits', views.limits, name='limits'),
	path('api/bills/<str:bill_id>/resolve', views.resolve_bill, name='resolve_bill'),
	path('api/webhooks/payments', views.payments_webhook, name='payments_webhook'),
]
