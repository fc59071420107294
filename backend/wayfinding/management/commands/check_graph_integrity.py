"""
Django management command to verify persisted navigation data
Reports dangling or invalid edges, nodes outside their floorplan image and
anchors bound outside their event's venue. Exits non-zero when issues exist.
"""
from django.core.management.base import BaseCommand, CommandError

from backend.venues.models import Floorplan
from backend.wayfinding import services
from backend.wayfinding.exceptions import GraphInvariantViolation


class Command(BaseCommand):
    help = 'Check navigation graphs for integrity problems'

    def add_arguments(self, parser):
        parser.add_argument(
            '--floorplan',
            type=int,
            help='Check a specific floorplan ID only',
        )

    def handle(self, *args, **options):
        floorplan_id = options.get('floorplan')

        self.stdout.write("=" * 80)
        self.stdout.write(self.style.SUCCESS("NAVIGATION GRAPH INTEGRITY CHECK"))
        self.stdout.write("=" * 80)

        floorplans = Floorplan.objects.order_by('id')
        if floorplan_id:
            floorplans = floorplans.filter(pk=floorplan_id)
            if not floorplans.exists():
                raise CommandError(f"Floorplan {floorplan_id} does not exist")

        issues = services.find_integrity_issues(floorplans)

        # Persisted data passed the row checks, now build the in-memory graphs
        if not issues:
            for floorplan in floorplans:
                try:
                    services.drop_graph(floorplan.pk)
                    services.ensure_graph(floorplan).check_integrity()
                except GraphInvariantViolation as e:
                    issues.append(f"Floorplan {floorplan.pk} ({floorplan.name}): {e.message}")

        for issue in issues:
            self.stdout.write(self.style.ERROR(f"  {issue}"))

        if issues:
            raise CommandError(f"Found {len(issues)} integrity issue(s)")
        self.stdout.write(self.style.SUCCESS(f"Checked {floorplans.count()} floorplan(s), no issues found"))
