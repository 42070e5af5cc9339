"""Integration tests for Easy CPD."""
import copy

import numpy as np
import pytest

from .context import comparer, interfaces, registration, utils


@pytest.fixture
def points():
    return np.random.default_rng(42).random(size=(40, 2))


@pytest.fixture
def points_3d():
    return np.random.default_rng(7).random(size=(50, 3))


@pytest.fixture
def translation():
    return np.array([1.0, 0.5])


@pytest.fixture
def rotation():
    angle = np.deg2rad(20.0)
    return np.array([[np.cos(angle), -np.sin(angle)],
                     [np.sin(angle), np.cos(angle)]])


@pytest.fixture
def unrelated_data():
    rng = np.random.default_rng(5)
    return rng.random(size=(30, 2)), rng.random(size=(25, 2)) * 3.0


@pytest.fixture
def normalized_data(unrelated_data):
    normalization = utils.normalize(*unrelated_data)
    return normalization.fixed, normalization.moving


class TestRigid:

    def test_rigid_constructor(self):
        rigid = registration.Rigid()
        assert rigid.scale and not rigid.reflections

    def test_rigid_identity(self, points):
        result = registration.rigid(points, points)
        assert isinstance(result, interfaces.RigidRegistrationResult)
        assert np.allclose(result.points, points, atol=1e-4)
        assert np.allclose(result.rotation, np.eye(2), atol=1e-4)
        assert np.isclose(result.scale, 1.0, atol=1e-4)
        assert 0 <= result.sigma2 < 1e-6

    def test_rigid_rotation_and_translation(self, points, rotation, translation):
        fixed = points @ rotation.T + translation
        result = registration.rigid(fixed, points)
        assert np.allclose(result.rotation, rotation, atol=1e-3)
        assert np.allclose(result.translation, translation, atol=1e-3)
        assert np.isclose(result.scale, 1.0, atol=1e-3)
        assert np.allclose(result.points, fixed, atol=1e-3)

    def test_rigid_transformation_matrix(self, points, rotation, translation):
        fixed = 1.5 * points @ rotation.T + translation
        result = registration.rigid(fixed, points)
        transformation = result.transformation
        assert transformation.shape == (3, 3)
        transformed = (np.hstack([points, np.ones((len(points), 1))]) @ transformation.T)[:, :2]
        assert np.allclose(transformed, result.points)
        assert np.isclose(result.scale, 1.5, atol=1e-3)

    def test_rigid_single_moving_point(self, points):
        with pytest.raises(ValueError):
            registration.rigid(points, points[:1])
        result = registration.rigid(points, points[:1], scale=False, max_iterations=5)
        assert np.all(np.isfinite(result.points))
        assert result.scale == 1.0

    def test_rigid_without_scale(self, points, rotation, translation):
        fixed = points @ rotation.T + translation
        result = registration.rigid(fixed, points, scale=False)
        assert result.scale == 1.0
        assert np.allclose(result.points, fixed, atol=1e-3)

    def test_rigid_3d(self, points_3d):
        angle = np.deg2rad(15.0)
        rotation = np.array([[1.0, 0.0, 0.0],
                             [0.0, np.cos(angle), -np.sin(angle)],
                             [0.0, np.sin(angle), np.cos(angle)]])
        fixed = points_3d @ rotation.T + np.array([0.1, -0.2, 0.3])
        result = registration.rigid(fixed, points_3d)
        assert np.allclose(result.rotation, rotation, atol=1e-3)
        assert np.allclose(result.points, fixed, atol=1e-3)
        assert result.transformation.shape == (4, 4)

    def test_rigid_modify_probabilities_is_noop(self, normalized_data):
        fixed, moving = normalized_data
        probabilities = comparer.DirectComparer().compute(fixed, moving, sigma2=0.5, outliers=0.1)
        l = probabilities.l
        registration.Rigid().modify_probabilities(probabilities)
        assert probabilities.l == l

    @pytest.mark.parametrize("scale", [True, False])
    def test_rigid_sigma2_non_negative(self, normalized_data, scale):
        fixed, moving = normalized_data
        rigid = registration.Rigid(scale=scale)
        rigid.init(fixed, moving)
        for sigma2 in [10.0, 1.0, 0.1, 0.01]:
            probabilities = comparer.DirectComparer().compute(fixed, moving, sigma2=sigma2, outliers=0.1)
            assert rigid.compute(fixed, moving, probabilities, sigma2).sigma2 >= 0


class TestNonrigid:

    def test_nonrigid_constructor(self):
        nonrigid = registration.Nonrigid()
        assert nonrigid.beta == 3.0 and nonrigid.lambd == 3.0
        with pytest.raises(ValueError):
            registration.Nonrigid(beta=0.0)
        with pytest.raises(ValueError):
            registration.Nonrigid(lambd=-1.0)

    def test_nonrigid_identity(self, points):
        result = registration.nonrigid(points, points)
        assert isinstance(result, interfaces.NonrigidRegistrationResult)
        assert np.allclose(result.points, points, atol=2e-2)
        assert result.sigma2 >= 0

    def test_nonrigid_translation(self, points, translation):
        fixed = points + translation
        result = registration.nonrigid(fixed, points)
        assert np.allclose(utils.get_average_translation(result.points, points), translation, atol=1e-2)

    def test_nonrigid_init(self, normalized_data):
        fixed, moving = normalized_data
        nonrigid = registration.Nonrigid(beta=2.0)
        nonrigid.init(fixed, moving)
        assert np.allclose(nonrigid._g, utils.affinity(moving, moving, 2.0))
        assert np.array_equal(nonrigid._w, np.zeros_like(moving))

    def test_nonrigid_regularization(self, normalized_data):
        fixed, moving = normalized_data
        nonrigid = registration.Nonrigid()
        nonrigid.init(fixed, moving)
        g = nonrigid._g.copy()

        probabilities = comparer.DirectComparer().compute(fixed, moving, sigma2=1.0, outliers=0.1)
        l = probabilities.l
        nonrigid.modify_probabilities(probabilities)
        assert probabilities.l == l

        result = nonrigid.compute(fixed, moving, probabilities, 1.0)
        assert np.allclose(result.points, moving + g @ result.w)
        probabilities = comparer.DirectComparer().compute(fixed, result.points, sigma2=result.sigma2, outliers=0.1)
        l = probabilities.l
        nonrigid.modify_probabilities(probabilities)
        penalty = nonrigid.lambd / 2.0 * np.trace(result.w.T @ g @ result.w)
        assert penalty > 0
        assert np.isclose(probabilities.l, l + penalty)
        assert np.array_equal(nonrigid._g, g)

    def test_nonrigid_sigma2_non_negative(self, normalized_data):
        fixed, moving = normalized_data
        nonrigid = registration.Nonrigid()
        nonrigid.init(fixed, moving)
        for sigma2 in [10.0, 1.0, 0.1, 0.01]:
            probabilities = comparer.DirectComparer().compute(fixed, moving, sigma2=sigma2, outliers=0.1)
            assert nonrigid.compute(fixed, moving, probabilities, sigma2).sigma2 >= 0

    def test_nonrigid_singular_system(self, normalized_data):
        fixed, moving = normalized_data
        moving = np.vstack([moving, moving[:1]])
        nonrigid = registration.Nonrigid()
        nonrigid.init(fixed, moving)
        probabilities = comparer.DirectComparer().compute(fixed, moving, sigma2=0.1, outliers=0.1)
        result = nonrigid.compute(fixed, moving, probabilities, 0.0)
        assert np.all(np.isfinite(result.points))


class TestRunner:

    def test_config_defaults(self):
        config = registration.RegistrationConfig()
        assert config.max_iterations == 150
        assert config.tolerance == 1e-5
        assert config.sigma2 == 0.0
        assert config.outliers == 0.1
        assert config.normalize
        assert not config.correspondence
        assert isinstance(config.comparer, comparer.DirectComparer)
        assert config.as_dict()["comparer"] == "direct"

    @pytest.mark.parametrize("kwargs", [{"max_iterations": -1},
                                        {"max_iterations": 2.5},
                                        {"tolerance": -1e-3},
                                        {"sigma2": -1.0},
                                        {"outliers": 1.0},
                                        {"outliers": -0.1}])
    def test_config_validation(self, kwargs):
        with pytest.raises(ValueError):
            registration.RegistrationConfig(**kwargs)

    def test_config_unknown_comparer(self):
        with pytest.raises(comparer.UnknownComparerError):
            registration.RegistrationConfig(comparer="fgt")

    def test_config_from_dict(self):
        config = registration.RegistrationConfig.from_dict({"max_iterations": 10, "sigma2": None})
        assert config.max_iterations == 10
        assert config.sigma2 == 0.0
        with pytest.raises(ValueError):
            registration.RegistrationConfig.from_dict({"iterations": 10})

    def test_runner_constructor(self):
        with pytest.raises(TypeError):
            registration.Runner("rigid")
        with pytest.raises(ValueError):
            registration.Runner(registration.Rigid(), config=registration.RegistrationConfig(), outliers=0.2)

    def test_runner_dimension_mismatch(self, points, points_3d):
        with pytest.raises(utils.DimensionMismatchError):
            registration.Runner(registration.Rigid()).run(points_3d, points)

    def test_runner_does_not_modify_input(self, points, translation):
        moving = points.copy()
        fixed = points + translation
        registration.Runner(registration.Nonrigid()).run(fixed, moving)
        assert np.array_equal(moving, points)
        assert np.array_equal(fixed, points + translation)

    def test_runner_max_iterations(self, unrelated_data):
        result = registration.Runner(registration.Rigid(), max_iterations=5, tolerance=0.0).run(*unrelated_data)
        assert result.iterations == 5

    @pytest.mark.parametrize("transform", [registration.Rigid, registration.Nonrigid])
    @pytest.mark.parametrize("max_iterations", [1, 3, 20])
    def test_runner_iteration_bound(self, unrelated_data, transform, max_iterations):
        result = registration.Runner(transform(), max_iterations=max_iterations).run(*unrelated_data)
        assert 1 <= result.iterations <= max_iterations

    def test_runner_zero_iterations(self, unrelated_data):
        fixed, moving = unrelated_data
        result = registration.Runner(registration.Rigid(), max_iterations=0).run(fixed, moving)
        assert result.iterations == 0
        assert np.allclose(result.points, moving - moving.mean(axis=0) + fixed.mean(axis=0))

        result = registration.Runner(registration.Nonrigid(), max_iterations=0, normalize=False).run(fixed, moving)
        assert result.iterations == 0
        assert np.allclose(result.points, moving)

    def test_runner_always_runs_one_iteration(self, unrelated_data):
        result = registration.Runner(registration.Rigid(), tolerance=2.0).run(*unrelated_data)
        assert result.iterations == 1

    def test_runner_without_normalization(self, points, translation):
        fixed = points + translation
        result = registration.Runner(registration.Rigid(scale=False), normalize=False).run(fixed, points)
        assert np.allclose(result.translation, translation, atol=1e-3)
        assert np.allclose(result.points, fixed, atol=1e-3)

    def test_runner_explicit_sigma2(self, points, translation):
        fixed = points + translation
        result = registration.Runner(registration.Rigid(), sigma2=0.5, progress=True).run(fixed, points)
        assert np.allclose(result.points, fixed, atol=1e-3)
        assert result.runtime >= 0

    def test_runner_outlier_boundary(self, points, translation):
        fixed = points + translation
        for outliers in [0.0, 0.5]:
            result = registration.Runner(registration.Rigid(), outliers=outliers).run(fixed, points)
            assert result.iterations < 150
            assert np.allclose(result.points, fixed, atol=1e-3)

    def test_runner_without_correspondence(self, points, translation):
        result = registration.Runner(registration.Rigid()).run(points + translation, points)
        assert result.correspondence is None

    def test_runner_correspondence_determinism(self, points, translation):
        fixed = points + translation
        runner = registration.Runner(registration.Nonrigid(), correspondence=True)
        first = runner.run(fixed, points)
        second = runner.run(fixed, points)
        assert first.correspondence.shape == (len(points),)
        assert np.array_equal(first.correspondence, second.correspondence)
        assert np.all((first.correspondence >= 0) & (first.correspondence < len(fixed)))

    def test_runner_correspondence_uses_configured_sigma2(self, points, translation):
        fixed = points + translation
        result = registration.Runner(registration.Rigid(), sigma2=0.01, correspondence=True).run(fixed, points)
        expected = comparer.DirectComparer().compute(fixed, result.points, 0.01, 0.1, correspondence=True)
        assert np.array_equal(result.correspondence, expected.correspondence)

        result = registration.Runner(registration.Rigid(), correspondence=True).run(fixed, points)
        sigma2 = utils.default_sigma2(fixed, result.points)
        expected = comparer.DirectComparer().compute(fixed, result.points, sigma2, 0.1, correspondence=True)
        assert np.array_equal(result.correspondence, expected.correspondence)

    def test_runner_custom_comparer(self, points, translation):
        direct = comparer.DirectComparer()
        runner = registration.Runner(registration.Rigid(), comparer=direct)
        assert runner.config.comparer is direct
        result = runner.run(points + translation, points)
        assert np.allclose(result.points, points + translation, atol=1e-3)

    def test_runner_results_are_snapshots(self, points, translation):
        runner = registration.Runner(registration.Nonrigid())
        first = runner.run(points + translation, points)
        first_points = copy.deepcopy(first.points)
        first_w = copy.deepcopy(first.w)
        runner.run(points * 2.0, points)
        assert np.array_equal(first.points, first_points)
        assert np.array_equal(first.w, first_w)

    def test_runner_run_many(self, points, translation, rotation):
        fixed_list = [points + translation, points @ rotation.T]
        runner = registration.Runner(registration.Rigid())
        results = runner.run_many(fixed_list, [points, points], one_vs_one=True, num_threads=2)
        assert len(results) == 2
        for fixed, result in zip(fixed_list, results):
            assert np.allclose(result.points, fixed, atol=1e-3)

        results = runner.run_many(fixed_list, [points])
        assert len(results) == 2
        with pytest.raises(ValueError):
            runner.run_many(fixed_list, [points], one_vs_one=True)
