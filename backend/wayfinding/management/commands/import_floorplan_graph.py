"""
Django management command to bulk import a navigation graph from a JSON file
The file has the same shape as the editor's bulk import payload:
{"nodes": [{"key": "A", "kind": "entrance", "x": 10, "y": 20}, ...],
 "edges": [{"from": "A", "to": "B", "weight": 12.5}, ...]}
"""
import json

from django.core.management.base import BaseCommand, CommandError

from backend.venues.models import Floorplan
from backend.wayfinding import services
from backend.wayfinding.exceptions import WayfindingError


class Command(BaseCommand):
    help = 'Import navigation nodes and edges into a floorplan (all or nothing)'

    def add_arguments(self, parser):
        parser.add_argument('floorplan_id', type=int, help='Target floorplan ID')
        parser.add_argument('json_path', help='Path to the graph JSON file')
        parser.add_argument(
            '--replace',
            action='store_true',
            help='Delete the existing nodes, edges and anchors of the floorplan first',
        )

    def handle(self, *args, **options):
        floorplan_id = options['floorplan_id']
        replace = options.get('replace', False)

        try:
            floorplan = Floorplan.objects.get(pk=floorplan_id)
        except Floorplan.DoesNotExist:
            raise CommandError(f"Floorplan {floorplan_id} does not exist")

        try:
            with open(options['json_path'], encoding='utf-8') as handle:
                payload = json.load(handle)
        except OSError as e:
            raise CommandError(f"Cannot read {options['json_path']}: {e}")
        except ValueError as e:
            raise CommandError(f"{options['json_path']} is not valid JSON: {e}")

        if replace:
            self.stdout.write(self.style.WARNING(f"Replacing the navigation graph of '{floorplan.name}'"))

        try:
            result = services.import_graph(floorplan, payload, replace=replace)
        except WayfindingError as e:
            raise CommandError(f"Import rejected, nothing was changed: {e.message} ({e.code})")

        self.stdout.write(self.style.SUCCESS(
            f"Imported {result['nodes_created']} nodes and {result['edges_created']} edges "
            f"into floorplan '{floorplan.name}' (ID: {floorplan.pk})"
        ))
