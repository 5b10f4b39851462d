import numpy as np
import pytest

from cellbmm.component import Component
from cellbmm.distributions import CategoricalSmoothed, CellCenter, MvNormal, ShapePrior


def test_shape_prior_validation():
    with pytest.raises(ValueError):
        ShapePrior(10, [1.0, -1.0])
    with pytest.raises(ValueError):
        ShapePrior(-1, [1.0, 1.0])
    prior = ShapePrior(5, [4.0, 9.0])
    np.testing.assert_allclose(prior.std_values, [2.0, 3.0])


def test_var_posterior_blends_sorted_values():
    prior = ShapePrior(10, [9.0, 1.0])
    post = prior.var_posterior(np.array([2.0, 4.0]), n_samples=10, prior_weight=1.0)
    np.testing.assert_allclose(post, [(1 * 1 + 10 * 2) / 11, (1 * 9 + 10 * 4) / 11])


def test_maximize_without_samples_keeps_params():
    comp = Component(MvNormal([1.0, 2.0], [[3.0, 0.5], [0.5, 2.0]]), CategoricalSmoothed([1.0, 2.0, 3.0]),
                     shape_prior=ShapePrior(10, [1.0, 1.0]), n_samples=7)
    mean, cov = comp.position_params.mean.copy(), comp.position_params.cov.copy()
    probs = comp.composition_params.probs.copy()

    comp.maximize(np.empty((0, 2)), np.empty(0, dtype=np.int64))

    assert comp.n_samples == 0
    np.testing.assert_array_equal(comp.position_params.mean, mean)
    np.testing.assert_array_equal(comp.position_params.cov, cov)
    np.testing.assert_array_equal(comp.composition_params.probs, probs)


@pytest.mark.parametrize("prior_weight", [0.0, 0.2, 1.0, 5.0])
def test_mvnormal_converges_to_sample_estimate(rng, prior_weight):
    true_mean = np.array([10.0, -5.0])
    true_cov = np.array([[4.0, 1.2], [1.2, 2.0]])
    x = rng.multivariate_normal(true_mean, true_cov, size=200000)

    dist = MvNormal([0.0, 0.0])
    dist.maximize(x, shape_prior=ShapePrior(10, [100.0, 100.0]), prior_weight=prior_weight)

    np.testing.assert_allclose(dist.mean, true_mean, atol=0.05)
    np.testing.assert_allclose(dist.cov, true_cov, atol=0.1)


def test_mvnormal_prior_dominates_small_samples():
    x = np.array([[0.0, 0.0], [0.1, 0.0]])
    dist = MvNormal([0.0, 0.0])
    dist.maximize(x, shape_prior=ShapePrior(10, [25.0, 25.0]), prior_weight=20.0)
    assert np.all(np.linalg.eigvalsh(dist.cov) > 20)


def test_single_sample_covariance_uses_prior_weight_as_pseudo_count():
    dist = MvNormal([0.0, 0.0])
    dist.maximize(np.array([[1.0, 1.0]]), shape_prior=ShapePrior(10, [4.0, 4.0]), prior_weight=1.0)
    np.testing.assert_array_equal(dist.mean, [1.0, 1.0])
    np.testing.assert_allclose(dist.cov, np.eye(2) * 2.0)

    dist = MvNormal([0.0, 0.0])
    dist.maximize(np.array([[1.0, 1.0]]), shape_prior=ShapePrior(10, [4.0, 4.0]), prior_weight=3.0)
    np.testing.assert_allclose(dist.cov, np.eye(2) * 3.0)


def test_single_sample_without_prior_keeps_cov():
    dist = MvNormal([0.0, 0.0], np.eye(2) * 3)
    dist.maximize(np.array([[1.0, 1.0]]))
    np.testing.assert_array_equal(dist.mean, [1.0, 1.0])
    np.testing.assert_array_equal(dist.cov, np.eye(2) * 3)


def test_center_prior_pulls_mean():
    x = np.tile([10.0, 10.0], (10, 1)) + np.array([[0.1, -0.1]] * 5 + [[-0.1, 0.1]] * 5)
    dist = MvNormal([0.0, 0.0])
    center = CellCenter([0.0, 0.0], np.eye(2), n_degrees_of_freedom=10)
    dist.maximize(x, center_prior=center)
    np.testing.assert_allclose(dist.mean, [5.0, 5.0])


def test_mvnormal_pdf_matches_closed_form():
    dist = MvNormal([0.0, 0.0], np.eye(2))
    np.testing.assert_allclose(dist.pdf(np.zeros((1, 2))), [1 / (2 * np.pi)])
    np.testing.assert_allclose(dist.logpdf(np.array([[1.0, 0.0]])), [-0.5 - np.log(2 * np.pi)])


def test_composition_sums_to_one(rng):
    dist = CategoricalSmoothed.uniform(6)
    np.testing.assert_allclose(dist.probs.sum(), 1.0)
    dist.maximize(rng.integers(0, 6, size=500))
    np.testing.assert_allclose(dist.probs.sum(), 1.0)
    assert dist.n_samples == 500


def test_composition_with_confidences():
    dist = CategoricalSmoothed.uniform(3, smooth=1.0)
    dist.maximize(np.array([0, 0, 1, -1]), confidences=np.array([0.5, 0.5, 2.0, 1.0]))
    np.testing.assert_allclose(dist.counts, [1.0, 2.0, 0.0])
    np.testing.assert_allclose(dist.probs, [2 / 6, 3 / 6, 1 / 6])
    np.testing.assert_allclose(dist.probs.sum(), 1.0)


def test_composition_rejects_negative_confidences():
    dist = CategoricalSmoothed.uniform(3)
    with pytest.raises(ValueError):
        dist.maximize(np.array([0, 1]), confidences=np.array([1.0, -0.5]))


def test_composition_pdf_of_missing_gene_is_one():
    dist = CategoricalSmoothed([3.0, 1.0], smooth=0.0)
    np.testing.assert_allclose(dist.pdf([0, 1, -1]), [0.75, 0.25, 1.0])


def test_component_priors_are_owned():
    prior = ShapePrior(10, [1.0, 1.0])
    c1 = Component(MvNormal([0, 0]), CategoricalSmoothed.uniform(2), shape_prior=prior)
    c2 = Component(MvNormal([0, 0]), CategoricalSmoothed.uniform(2), shape_prior=prior)
    c1.shape_prior.variances[0] = 50.0
    assert c2.shape_prior.variances[0] == 1.0
    assert prior.variances[0] == 1.0


def test_non_droppable_component_cannot_be_removed():
    comp = Component(MvNormal([0, 0]), CategoricalSmoothed.uniform(2), can_be_dropped=False)
    assert not comp.can_be_removed
    with pytest.raises(ValueError):
        comp.mark_removed()


@pytest.mark.parametrize("smooth", [0.0, 0.5, 1.0])
def test_composition_from_count_vectors(rng, smooth):
    for _ in range(20):
        counts = rng.integers(0, 50, size=8)
        probs = CategoricalSmoothed(counts, smooth=smooth).probs
        assert abs(probs.sum() - 1.0) <= 1e-9
        assert (probs >= 0).all()
    np.testing.assert_allclose(CategoricalSmoothed(np.zeros(4), smooth=0.0).probs, np.full(4, 0.25))
