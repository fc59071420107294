"""
URL configuration for the NavEaze backend.

Every app mounts its routes under /api/v1/:
    backend.core        auth and audit logs
    backend.venues      venues, events and floorplans
    backend.wayfinding  navigation graphs, anchors and routing
"""
from django.contrib import admin
from django.urls import path, include, re_path
from django.conf import settings
from django.views.static import serve

admin.site.site_header = "NavEaze Admin Panel"
admin.site.site_title = "NavEaze Admin Portal"
admin.site.index_title = "Venues, floorplans and navigation graphs"

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/v1/', include('backend.core.urls')),
    path('api/v1/', include('backend.venues.urls')),
    path('api/v1/', include('backend.wayfinding.urls')),
    re_path(r'^media/(?P<path>.*)$', serve, {'document_root': settings.MEDIA_ROOT}),
    re_path(r'^static/(?P<path>.*)$', serve, {'document_root': settings.STATIC_ROOT}),
]
