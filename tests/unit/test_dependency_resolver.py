"""
Unit tests for stage resolution and cycle detection.
"""
import random

import pytest

from convoy.errors import CycleError, ManifestError
from convoy.RUNNERS.dependency_resolver import DependencyResolver


class TestResolve:
    """Tests for DependencyResolver.resolve."""

    def test_independent_services_share_a_stage(self, web_stack):
        """db and cache start together, web after both."""
        assert DependencyResolver().resolve(web_stack) == [['db', 'cache'], ['web']]

    def test_declaration_order_breaks_ties(self, build_manifest):
        manifest = build_manifest({
            'zeta': {'image': 'x'},
            'alpha': {'image': 'x', 'depends_on': ['zeta']},
            'mid': {'image': 'x'},
            'beta': {'image': 'x', 'depends_on': ['zeta']},
        })
        assert DependencyResolver().resolve(manifest) == [['zeta', 'mid'], ['alpha', 'beta']]

    def test_chain(self, build_manifest):
        manifest = build_manifest({
            'web': {'image': 'x', 'depends_on': ['api']},
            'api': {'image': 'x', 'depends_on': ['db']},
            'db': {'image': 'x'},
        })
        resolver = DependencyResolver()
        assert resolver.resolve(manifest) == [['db'], ['api'], ['web']]
        assert resolver.resolve_order(manifest) == ['db', 'api', 'web']

    def test_random_graphs_produce_valid_stages(self, build_manifest):
        """Every service appears once, in a later stage than all its dependencies."""
        rng = random.Random(1234)
        resolver = DependencyResolver()
        for _ in range(25):
            names = [f"s{i}" for i in range(rng.randint(1, 15))]
            rng.shuffle(names)
            services = {}
            for position, name in enumerate(names):
                # Depending only on earlier-declared names keeps the graph acyclic
                earlier = names[:position]
                deps = rng.sample(earlier, rng.randint(0, min(3, len(earlier))))
                services[name] = {'image': 'x', 'depends_on': deps}

            manifest = build_manifest(services)
            stages = resolver.resolve(manifest)

            stage_of = {}
            for index, stage in enumerate(stages):
                for name in stage:
                    assert name not in stage_of
                    stage_of[name] = index
            assert set(stage_of) == set(names)
            for name, spec in services.items():
                for dep in spec['depends_on']:
                    assert stage_of[dep] < stage_of[name]


class TestCycles:
    """Tests for cycle detection."""

    def test_two_service_cycle(self, build_manifest):
        manifest = build_manifest({
            'a': {'image': 'x', 'depends_on': ['b']},
            'b': {'image': 'x', 'depends_on': ['a']},
        })
        with pytest.raises(CycleError) as exc:
            DependencyResolver().resolve(manifest)
        assert exc.value.services == ['a', 'b']
        assert isinstance(exc.value, ManifestError)

    def test_self_dependency(self, build_manifest):
        manifest = build_manifest({
            'db': {'image': 'x'},
            'loop': {'image': 'x', 'depends_on': ['loop']},
        })
        with pytest.raises(CycleError) as exc:
            DependencyResolver().resolve(manifest)
        assert exc.value.services == ['loop']

    def test_services_behind_a_cycle_are_not_named(self, build_manifest):
        manifest = build_manifest({
            'web': {'image': 'x', 'depends_on': ['a']},
            'a': {'image': 'x', 'depends_on': ['b']},
            'b': {'image': 'x', 'depends_on': ['c']},
            'c': {'image': 'x', 'depends_on': ['a']},
            'ok': {'image': 'x'},
        })
        with pytest.raises(CycleError) as exc:
            DependencyResolver().resolve(manifest)
        assert exc.value.services == ['a', 'b', 'c']

    def test_two_separate_cycles(self, build_manifest):
        manifest = build_manifest({
            'a': {'image': 'x', 'depends_on': ['b']},
            'b': {'image': 'x', 'depends_on': ['a']},
            'bridge': {'image': 'x', 'depends_on': ['a']},
            'c': {'image': 'x', 'depends_on': ['d', 'bridge']},
            'd': {'image': 'x', 'depends_on': ['c']},
        })
        with pytest.raises(CycleError) as exc:
            DependencyResolver().resolve(manifest)
        assert exc.value.services == ['a', 'b', 'c', 'd']


class TestSelection:
    """Tests for resolving a subset of services."""

    def test_subset_pulls_in_dependencies(self, build_manifest):
        manifest = build_manifest({
            'db': {'image': 'x'},
            'worker': {'image': 'x', 'depends_on': ['db']},
            'api': {'image': 'x', 'depends_on': ['db']},
            'web': {'image': 'x', 'depends_on': ['api']},
        })
        assert DependencyResolver().resolve(manifest, ['web']) == [['db'], ['api'], ['web']]

    def test_unknown_service(self, web_stack):
        with pytest.raises(ManifestError, match="no such service: nope"):
            DependencyResolver().resolve(web_stack, ['nope'])

    def test_teardown_stages(self):
        stages = [['db', 'cache'], ['api'], ['web']]
        assert DependencyResolver.teardown_stages(stages) == [['web'], ['api'], ['cache', 'db']]

    def test_dependents(self, build_manifest):
        manifest = build_manifest({
            'db': {'image': 'x'},
            'cache': {'image': 'x'},
            'api': {'image': 'x', 'depends_on': ['db']},
            'web': {'image': 'x', 'depends_on': ['api', 'cache']},
        })
        resolver = DependencyResolver()
        assert resolver.dependents(manifest, ['db']) == {'db', 'api', 'web'}
        assert resolver.dependents(manifest, ['cache']) == {'cache', 'web'}
        assert resolver.dependents(manifest, ['web']) == {'web'}
