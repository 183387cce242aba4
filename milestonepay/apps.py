import threading

from django.apps import AppConfig


class MilestonePayConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'milestonepay'
    verbose_name = 'Milestone payments'

    _platform = None
    _platform_lock = threading.Lock()

    @property
    def platform(self):
        """Platform services shared by the API views, built on first use."""
        if self._platform is None:
            with self._platform_lock:
                if self._platform is None:
                    from milestonepay.services import build_platform

                    MilestonePayConfig._platform = build_platform()
        return self._platform
