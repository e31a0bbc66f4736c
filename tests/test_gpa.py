"""Tests for GPA module."""

import dataclasses

import numpy as np
import pytest

from morphosets import (
    GPAOptions,
    StructuralMismatch,
    align,
    as_landmark_array,
    center,
    centroid_size,
    generalized_procrustes,
    mean_shape,
    principal_axes_rotation,
    procrustes_distance,
    project_to_tangent_space,
    scale,
)


def _rotation_2d(theta):
    return np.array([[np.cos(theta), -np.sin(theta)], [np.sin(theta), np.cos(theta)]])


@pytest.fixture
def outline_2d():
    """Square outline with one semilandmark on the bottom edge, 2 specimens."""
    landmarks = np.zeros((5, 2, 2))
    corners = [[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0]]
    landmarks[:4, :, 0] = corners
    landmarks[:4, :, 1] = corners
    landmarks[4, :, 0] = [0.5, 0.0]
    landmarks[4, :, 1] = [0.3, 0.0]
    return landmarks


@pytest.fixture
def semicircles():
    """Twelve points on a semicircle, 6 specimens with jittered semilandmarks."""
    rng = np.random.default_rng(3)
    base = np.linspace(0, np.pi, 12)
    landmarks = np.zeros((12, 2, 6))
    for i in range(6):
        angles = base.copy()
        angles[1:-1] += rng.uniform(-0.08, 0.08, size=10)
        radius = 1.0 + rng.normal(scale=0.02, size=12)
        landmarks[:, 0, i] = radius * np.cos(angles)
        landmarks[:, 1, i] = radius * np.sin(angles)
    return landmarks


SEMICIRCLE_CURVES = [[i - 1, i, i + 1] for i in range(1, 11)]


class TestAsLandmarkArray:
    def test_accepts_nested_lists(self):
        array = as_landmark_array([[[0, 1], [0, 1]], [[1, 2], [1, 2]]])

        assert array.shape == (2, 2, 2)
        assert array.dtype == float

    def test_rejects_two_dimensional_array(self):
        with pytest.raises(StructuralMismatch, match="got 2 dimension"):
            as_landmark_array(np.zeros((4, 3)))

    def test_rejects_unsupported_dimension_count(self):
        with pytest.raises(StructuralMismatch, match="2 or 3 coordinates"):
            as_landmark_array(np.zeros((4, 4, 2)), name="head")

    def test_error_names_subset(self):
        with pytest.raises(StructuralMismatch) as excinfo:
            as_landmark_array(np.zeros(5), name="tail")

        assert excinfo.value.subsets == ("tail",)


class TestCenter:
    def test_center_moves_centroid_to_origin(self):
        shape = np.array([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0], [7.0, 8.0, 9.0]])
        centered = center(shape)

        np.testing.assert_array_almost_equal(
            centered.mean(axis=0), np.array([0.0, 0.0, 0.0])
        )

    def test_center_2d(self):
        shape = np.array([[2.0, 2.0], [4.0, 2.0], [3.0, 5.0]])

        np.testing.assert_array_almost_equal(center(shape).mean(axis=0), [0.0, 0.0])


class TestScale:
    def test_scale_normalizes_to_unit_norm(self):
        shape = np.array([[1.0, 0.0, 0.0], [0.0, 2.0, 0.0], [0.0, 0.0, 3.0]])
        scaled = scale(shape)

        np.testing.assert_almost_equal(np.linalg.norm(scaled), 1.0)

    def test_scale_handles_zero_shape(self):
        shape = np.array([[0.0, 0.0, 0.0], [0.0, 0.0, 0.0]])
        scaled = scale(shape)

        np.testing.assert_array_equal(scaled, shape)


class TestCentroidSize:
    def test_centroid_size_of_unit_square(self):
        # Each corner is sqrt(0.5) from the centroid
        shape = np.array([[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0]])

        np.testing.assert_almost_equal(centroid_size(shape), np.sqrt(2.0))

    def test_centroid_size_scaled_shape(self):
        shape = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
        size1 = centroid_size(shape)
        size2 = centroid_size(shape * 2)

        np.testing.assert_almost_equal(size2, size1 * 2)


class TestAlign:
    def test_align_rotated_shape(self):
        ref = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])

        # 90 degree rotation around z-axis
        theta = np.pi / 2
        rotation = np.array(
            [[np.cos(theta), -np.sin(theta), 0], [np.sin(theta), np.cos(theta), 0], [0, 0, 1]]
        )
        rotated = np.dot(ref, rotation)

        aligned = align(rotated, ref)
        np.testing.assert_array_almost_equal(aligned, ref, decimal=5)

    def test_align_rotated_shape_2d(self):
        ref = center(np.array([[0.0, 0.0], [2.0, 0.0], [0.5, 1.0]]))
        rotated = np.dot(ref, _rotation_2d(1.1))

        np.testing.assert_array_almost_equal(align(rotated, ref), ref)

    def test_align_does_not_reflect(self):
        ref = center(np.array([[0.0, 0.0], [2.0, 0.0], [0.5, 1.0]]))
        mirrored = ref * np.array([-1.0, 1.0])

        aligned = align(mirrored, ref)

        assert np.linalg.norm(aligned - ref) > 0.1

    def test_align_preserves_shape(self):
        ref = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        shape = np.array([[0.0, 0.0, 0.0], [0.0, 1.0, 0.0], [-1.0, 0.0, 0.0]])

        aligned = align(shape, ref)

        orig_dists = [np.linalg.norm(shape[i] - shape[j]) for i in range(3) for j in range(i + 1, 3)]
        aligned_dists = [np.linalg.norm(aligned[i] - aligned[j]) for i in range(3) for j in range(i + 1, 3)]

        np.testing.assert_array_almost_equal(orig_dists, aligned_dists)


class TestMeanShape:
    def test_mean_shape_multiple_specimens(self):
        landmarks = np.zeros((3, 3, 2))
        landmarks[:, :, 0] = [[0, 0, 0], [2, 0, 0], [0, 2, 0]]
        landmarks[:, :, 1] = [[0, 0, 0], [4, 0, 0], [0, 4, 0]]

        mean = mean_shape(landmarks)

        expected = np.array([[0, 0, 0], [3, 0, 0], [0, 3, 0]])
        np.testing.assert_array_equal(mean, expected)


class TestProcrustesDistance:
    def test_procrustes_distance_identical(self):
        landmarks = np.zeros((3, 3, 2))
        landmarks[:, :, 0] = [[0, 0, 0], [1, 0, 0], [0, 1, 0]]
        landmarks[:, :, 1] = [[0, 0, 0], [1, 0, 0], [0, 1, 0]]

        ref = mean_shape(landmarks)
        dists = procrustes_distance(landmarks, ref)

        np.testing.assert_array_almost_equal(dists, [0.0, 0.0])

    def test_procrustes_distance_different(self):
        landmarks = np.zeros((3, 3, 2))
        landmarks[:, :, 0] = [[0, 0, 0], [1, 0, 0], [0, 1, 0]]
        landmarks[:, :, 1] = [[0, 0, 0], [2, 0, 0], [0, 2, 0]]

        dists = procrustes_distance(landmarks, landmarks[:, :, 0])

        assert dists[0] == 0.0
        np.testing.assert_almost_equal(dists[1], np.sqrt(2.0))


class TestPrincipalAxes:
    def test_rotation_is_proper(self):
        rng = np.random.default_rng(3)
        rotation = principal_axes_rotation(rng.normal(size=(6, 3)))

        np.testing.assert_array_almost_equal(rotation.T @ rotation, np.eye(3))
        np.testing.assert_almost_equal(np.linalg.det(rotation), 1.0)

    def test_long_axis_becomes_first_axis(self):
        # Elongated along y
        shape = np.array([[0.0, -3.0], [0.5, 0.0], [0.0, 3.0], [-0.5, 0.0]])

        rotated = center(shape) @ principal_axes_rotation(shape)
        spread = rotated.var(axis=0)

        assert spread[0] > spread[1]


class TestTangentProjection:
    def test_projection_is_orthogonal_to_reference(self):
        rng = np.random.default_rng(7)
        reference = scale(center(rng.normal(size=(5, 2))))
        landmarks = np.stack(
            [scale(center(reference + rng.normal(scale=0.05, size=(5, 2)))) for _ in range(4)],
            axis=2,
        )

        projected = project_to_tangent_space(landmarks, reference)

        ref = reference.reshape(-1)
        for i in range(4):
            offset = projected[:, :, i].reshape(-1) - ref
            np.testing.assert_almost_equal(offset @ ref, 0.0)

    def test_reference_is_fixed_point(self):
        reference = scale(center(np.array([[0.0, 0.0], [2.0, 0.0], [0.5, 1.0]])))
        landmarks = reference[:, :, np.newaxis].repeat(2, axis=2)

        projected = project_to_tangent_space(landmarks, reference)

        np.testing.assert_array_almost_equal(projected, landmarks)


class TestGeneralizedProcrustes:
    def test_gpa_aligns_translated_shapes(self):
        landmarks = np.zeros((3, 3, 2))
        landmarks[:, :, 0] = [[0, 0, 0], [1, 0, 0], [0, 1, 0]]
        landmarks[:, :, 1] = [[10, 10, 10], [11, 10, 10], [10, 11, 10]]

        result = generalized_procrustes(landmarks)

        diff = np.linalg.norm(result.aligned[:, :, 0] - result.aligned[:, :, 1])
        assert diff < 0.01

    def test_gpa_aligns_scaled_shapes(self):
        landmarks = np.zeros((3, 3, 2))
        landmarks[:, :, 0] = [[0, 0, 0], [1, 0, 0], [0, 1, 0]]
        landmarks[:, :, 1] = [[0, 0, 0], [2, 0, 0], [0, 2, 0]]

        result = generalized_procrustes(landmarks, scale=True)

        diff = np.linalg.norm(result.aligned[:, :, 0] - result.aligned[:, :, 1])
        assert diff < 0.01

    def test_gpa_aligns_rotated_2d_shapes(self):
        base = np.array([[0.0, 0.0], [2.0, 0.0], [2.0, 1.0], [0.5, 1.5]])
        landmarks = np.stack(
            [base, 3.0 * base @ _rotation_2d(0.7) + 5.0, 0.5 * base @ _rotation_2d(-1.2)],
            axis=2,
        )

        result = generalized_procrustes(landmarks)

        assert result.aligned.shape == (4, 2, 3)
        np.testing.assert_array_almost_equal(
            procrustes_distance(result.aligned, result.mean_shape), np.zeros(3)
        )

    def test_gpa_no_scale_preserves_size_differences(self):
        landmarks = np.zeros((3, 3, 2))
        landmarks[:, :, 0] = [[0, 0, 0], [1, 0, 0], [0, 1, 0]]
        landmarks[:, :, 1] = [[0, 0, 0], [2, 0, 0], [0, 2, 0]]

        result = generalized_procrustes(landmarks, scale=False)

        size0 = np.linalg.norm(result.aligned[:, :, 0])
        size1 = np.linalg.norm(result.aligned[:, :, 1])
        assert size1 > size0

    def test_gpa_returns_centroid_sizes(self):
        landmarks = np.zeros((3, 3, 2))
        landmarks[:, :, 0] = [[0, 0, 0], [1, 0, 0], [0, 1, 0]]
        landmarks[:, :, 1] = [[0, 0, 0], [2, 0, 0], [0, 2, 0]]

        result = generalized_procrustes(landmarks)

        assert len(result.centroid_sizes) == 2
        np.testing.assert_almost_equal(
            result.centroid_sizes[1], 2 * result.centroid_sizes[0]
        )

    def test_gpa_does_not_modify_input(self):
        landmarks = np.zeros((3, 3, 2))
        landmarks[:, :, 0] = [[0, 0, 0], [1, 0, 0], [0, 1, 0]]
        landmarks[:, :, 1] = [[10, 10, 10], [11, 10, 10], [10, 11, 10]]
        original = landmarks.copy()

        generalized_procrustes(landmarks)

        np.testing.assert_array_equal(landmarks, original)

    def test_gpa_reports_iterations(self):
        rng = np.random.default_rng(11)

        result = generalized_procrustes(rng.normal(size=(6, 2, 5)), max_iterations=3)

        assert 1 <= result.iterations <= 3

    def test_gpa_rejects_malformed_input(self):
        with pytest.raises(StructuralMismatch):
            generalized_procrustes(np.zeros((4, 2)))

    def test_gpa_rejects_unknown_sliding_criterion(self, outline_2d):
        with pytest.raises(ValueError, match="Unknown sliding criterion"):
            generalized_procrustes(outline_2d, sliding_criterion="energy")

    def test_gpa_rejects_surfaces_in_2d(self, outline_2d):
        with pytest.raises(ValueError, match="require 3D"):
            generalized_procrustes(outline_2d, surfaces=[4])

    def test_gpa_rejects_curve_index_out_of_range(self, outline_2d):
        with pytest.raises(ValueError, match="Curve indices"):
            generalized_procrustes(outline_2d, curves=[[0, 4, 9]])

    @pytest.mark.parametrize("criterion", ["procrustes", "bending_energy"])
    def test_sliding_removes_variation_along_curve(self, outline_2d, criterion):
        plain = generalized_procrustes(outline_2d)
        slid = generalized_procrustes(
            outline_2d, curves=[[0, 4, 1]], sliding_criterion=criterion
        )

        plain_diff = np.linalg.norm(plain.aligned[:, :, 0] - plain.aligned[:, :, 1])
        slid_diff = np.linalg.norm(slid.aligned[:, :, 0] - slid.aligned[:, :, 1])
        assert slid_diff < plain_diff / 10

    @pytest.mark.parametrize("criterion", ["procrustes", "bending_energy"])
    def test_sliding_converges_and_keeps_spacing(self, semicircles, criterion):
        def run(max_iterations):
            return generalized_procrustes(
                semicircles,
                curves=SEMICIRCLE_CURVES,
                sliding_criterion=criterion,
                max_iterations=max_iterations,
                principal_axes=False,
                projection=False,
            )

        short = run(20)
        long = run(200)

        assert long.iterations < 200
        dispersion_short = np.sum(procrustes_distance(short.aligned, short.mean_shape) ** 2)
        dispersion_long = np.sum(procrustes_distance(long.aligned, long.mean_shape) ** 2)
        assert dispersion_long <= 1.1 * dispersion_short

        gaps = np.linalg.norm(np.diff(long.mean_shape, axis=0), axis=1)
        assert gaps.min() > 0.5 * np.median(gaps)
        # Chord length from the first point grows along a semicircle
        chords = np.linalg.norm(long.mean_shape - long.mean_shape[0], axis=1)
        assert np.all(np.diff(chords) > 0)

    def test_gpa_result_is_frozen(self, outline_2d):
        result = generalized_procrustes(outline_2d)

        with pytest.raises(dataclasses.FrozenInstanceError):
            result.iterations = 0


class TestGPAOptions:
    def test_run_matches_function(self, outline_2d):
        options = GPAOptions(curves=[[0, 4, 1]], principal_axes=False)

        from_options = options.run(outline_2d)
        direct = generalized_procrustes(
            outline_2d, curves=[[0, 4, 1]], principal_axes=False
        )

        np.testing.assert_array_equal(from_options.aligned, direct.aligned)

    def test_invalid_criterion_rejected(self):
        with pytest.raises(ValueError, match="Unknown sliding criterion"):
            GPAOptions(sliding_criterion="distance")

    def test_negative_iterations_rejected(self):
        with pytest.raises(ValueError, match="max_iterations"):
            GPAOptions(max_iterations=-1)
