# Generated manually

import django.db.models.deletion
from django.db import migrations, models


NODE_KIND_CHOICES = [
    ('poi', 'Poi'), ('entrance', 'Entrance'), ('exit', 'Exit'), ('restroom', 'Restroom'),
    ('elevator', 'Elevator'), ('stairs', 'Stairs'), ('emergency_exit', 'Emergency Exit'),
    ('first_aid', 'First Aid'), ('qr_anchor', 'Qr Anchor'),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('venues', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='NavigationNode',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('node_key', models.CharField(blank=True, help_text='Editor-side key used to reference the node in bulk imports', max_length=100)),
                ('kind', models.CharField(choices=NODE_KIND_CHOICES, default='poi', max_length=30)),
                ('name', models.CharField(blank=True, max_length=200)),
                ('x', models.FloatField(blank=True, null=True)),
                ('y', models.FloatField(blank=True, null=True)),
                ('is_emergency_exit', models.BooleanField(default=False)),
                ('is_first_aid', models.BooleanField(default=False)),
                ('positioned', models.BooleanField(default=True, help_text='False for logical nodes without a location on the image')),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('floorplan', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='navigation_nodes', to='venues.floorplan')),
            ],
            options={
                'db_table': 'navigation_nodes',
                'ordering': ['id'],
                'indexes': [
                    models.Index(fields=['floorplan', 'kind'], name='nav_node_floorplan_kind_idx'),
                    models.Index(fields=['floorplan', 'node_key'], name='nav_node_floorplan_key_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='NavigationEdge',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('edge_key', models.CharField(blank=True, max_length=100)),
                ('weight', models.FloatField(help_text='Traversal cost, usually metres')),
                ('is_emergency_path', models.BooleanField(default=False)),
                ('is_accessible', models.BooleanField(default=True)),
                ('directed', models.BooleanField(default=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('floorplan', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='navigation_edges', to='venues.floorplan')),
                ('from_node', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='edges_out', to='wayfinding.navigationnode')),
                ('to_node', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='edges_in', to='wayfinding.navigationnode')),
            ],
            options={
                'db_table': 'navigation_edges',
                'ordering': ['id'],
            },
        ),
        migrations.CreateModel(
            name='AnchorBinding',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('anchor_code', models.CharField(max_length=200)),
                ('allow_shared_node', models.BooleanField(default=False, help_text='Allow several anchors of this event on the same node')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('event', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='anchor_bindings', to='venues.event')),
                ('node', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='anchor_bindings', to='wayfinding.navigationnode')),
            ],
            options={
                'db_table': 'anchor_bindings',
                'ordering': ['anchor_code'],
                'unique_together': {('event', 'anchor_code')},
            },
        ),
    ]
