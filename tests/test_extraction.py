import numpy as np
import pandas as pd
import pytest
from sklearn.decomposition import PCA, FactorAnalysis
from sklearn.mixture import GaussianMixture

from psych_interpreter.config import build_interpretation_args
from psych_interpreter.exceptions import DataMismatchError, ParameterValidationError
from psych_interpreter.extraction import (
    align_variable_info,
    expand_covariances,
    extract,
    infer_analysis_type,
    normalize_variable_info,
    summarize_factor,
)
from psych_interpreter.models import FactorAnalysisData, MixtureAnalysisData


def _sample_frame(seed=0, n=200):
    rng = np.random.default_rng(seed)
    latent = rng.normal(size=(n, 2))
    data = np.column_stack(
        [
            latent[:, 0] + 0.3 * rng.normal(size=n),
            latent[:, 0] + 0.3 * rng.normal(size=n),
            latent[:, 1] + 0.3 * rng.normal(size=n),
        ]
    )
    return pd.DataFrame(data, columns=["v1", "v2", "v3"])


def _two_blobs(seed=0):
    rng = np.random.default_rng(seed)
    first = rng.normal(loc=[2, 2, -1], scale=0.3, size=(40, 3))
    second = rng.normal(loc=[-2, -2, 1], scale=0.3, size=(60, 3))
    return pd.DataFrame(np.vstack([first, second]), columns=["v1", "v2", "v3"])


def test_extract_loadings_frame(fa_data):
    """Tests extraction of a labelled loading matrix."""
    assert isinstance(fa_data, FactorAnalysisData)
    assert fa_data.component_ids == ("Factor_1", "Factor_2")
    assert fa_data.component_labels == ("MR1", "MR2")
    assert fa_data.variable_names == ("v1", "v2", "v3")
    assert fa_data.loadings.loc["v3", "Factor_2"] == pytest.approx(0.9)


def test_factor_summaries(fa_data):
    """Tests indicator selection, ordering and variance explained."""
    first = fa_data.factor_summaries["Factor_1"]
    assert first.indicators["variable"].tolist() == ["v1", "v2"]
    assert not first.used_emergency_rule
    assert first.variance_explained == pytest.approx((0.64 + 0.49 + 0.01) / 3)
    second = fa_data.factor_summaries["Factor_2"]
    assert second.indicators["variable"].tolist() == ["v3"]
    assert second.indicators["description"].tolist() == ["Worries often"]


def test_emergency_rule():
    """Tests that the top loadings are used when none reaches the cutoff."""
    loadings = pd.Series([0.2, -0.28, 0.25], index=["v1", "v2", "v3"])
    descriptions = {"v1": "a", "v2": "b", "v3": "c"}
    summary = summarize_factor(loadings, descriptions, cutoff=0.3, n_emergency=2)
    assert summary.used_emergency_rule
    assert summary.status == "emergency"
    assert summary.indicators["variable"].tolist() == ["v2", "v3"]


def test_emergency_rule_disabled():
    """Tests that n_emergency=0 leaves the factor undefined."""
    loadings = pd.Series([0.2, -0.28, 0.25], index=["v1", "v2", "v3"])
    summary = summarize_factor(loadings, {"v1": "a", "v2": "b", "v3": "c"}, 0.3, 0)
    assert summary.status == "undefined"
    assert summary.indicators.empty
    assert not summary.used_emergency_rule


def test_unsorted_indicators_keep_model_order():
    """Tests that sort_loadings=False keeps the variable order."""
    loadings = pd.Series([0.4, 0.9, 0.5], index=["v1", "v2", "v3"])
    summary = summarize_factor(loadings, {"v1": "a", "v2": "b", "v3": "c"}, 0.3, 2, False)
    assert summary.indicators["variable"].tolist() == ["v1", "v2", "v3"]


def test_extract_sklearn_factor_analysis(variable_info):
    """Tests extraction from a fitted sklearn FactorAnalysis."""
    model = FactorAnalysis(n_components=2, random_state=0).fit(_sample_frame())
    data = extract(model, variable_info)
    assert data.analysis_type == "fa"
    assert data.loadings.shape == (3, 2)
    np.testing.assert_allclose(data.loadings.to_numpy(), model.components_.T)


def test_extract_sklearn_pca(variable_info):
    """Tests that PCA components are scaled to loadings."""
    model = PCA(n_components=2).fit(_sample_frame())
    data = extract(model, variable_info)
    expected = model.components_.T * np.sqrt(model.explained_variance_)
    np.testing.assert_allclose(data.loadings.to_numpy(), expected)


def test_extract_array_uses_description_order(variable_info):
    """Tests that unlabelled matrices follow the description order."""
    data = extract(np.array([[0.8], [0.7], [0.1]]), variable_info, analysis_type="fa")
    assert data.variable_names == ("v1", "v2", "v3")
    assert data.component_ids == ("Factor_1",)


def test_extract_reorders_descriptions(fa_loadings):
    """Tests that descriptions are aligned to the model's variable order."""
    info = {"v3": "Worries often", "v1": "Enjoys parties", "v2": "Talks to strangers"}
    data = extract(fa_loadings, info, analysis_type="fa")
    assert data.variable_info["variable"].tolist() == ["v1", "v2", "v3"]
    assert data.descriptions()["v3"] == "Worries often"


def test_extract_fa_record_with_correlations(fa_loadings, variable_info):
    """Tests a dict record carrying a factor correlation matrix."""
    record = {"loadings": fa_loadings, "Phi": [[1.0, 0.3], [0.3, 1.0]]}
    data = extract(record, variable_info)
    assert data.factor_correlations.loc["Factor_1", "Factor_2"] == pytest.approx(0.3)


def test_extract_fa_record_bad_correlations(fa_loadings, variable_info):
    """Tests that a correlation matrix of the wrong shape is rejected."""
    record = {"loadings": fa_loadings, "factor_cor_mat": np.eye(3)}
    with pytest.raises(DataMismatchError):
        extract(record, variable_info)


def test_variable_count_mismatch(fa_loadings):
    """Tests that a description count mismatch is reported."""
    info = {"v1": "a", "v2": "b", "v3": "c", "v4": "d"}
    with pytest.raises(DataMismatchError, match="4 rows"):
        extract(fa_loadings, info, analysis_type="fa")


def test_variable_name_mismatch(fa_loadings):
    """Tests that both mismatch directions are named in the error."""
    info = {"v1": "a", "v2": "b", "x9": "c"}
    with pytest.raises(DataMismatchError) as excinfo:
        extract(fa_loadings, info, analysis_type="fa")
    assert "v3" in str(excinfo.value)
    assert "x9" in str(excinfo.value)


def test_normalize_variable_info_errors():
    """Tests validation of the variable description table."""
    with pytest.raises(DataMismatchError, match="missing"):
        normalize_variable_info(pd.DataFrame({"variable": ["v1"]}))
    with pytest.raises(DataMismatchError, match="Duplicate"):
        normalize_variable_info(
            pd.DataFrame({"variable": ["v1", "v1"], "description": ["a", "b"]})
        )
    with pytest.raises(DataMismatchError, match="Blank"):
        normalize_variable_info({"v1": "a", "v2": " "})
    with pytest.raises(ParameterValidationError):
        normalize_variable_info(["v1", "v2"])


def test_align_without_model_names():
    """Tests alignment when the model carries no variable names."""
    info = normalize_variable_info({"a": "x", "b": "y"})
    names, aligned = align_variable_info(info, None, 2)
    assert names == ["a", "b"]
    assert aligned.equals(info)


def test_unsupported_input(variable_info):
    """Tests that unsupported inputs raise a validation error."""
    with pytest.raises(ParameterValidationError, match="Cannot extract"):
        extract("loadings.csv", variable_info, analysis_type="fa")
    with pytest.raises(ParameterValidationError, match="Cannot infer"):
        extract(object(), variable_info)


def test_loadings_with_missing_values(variable_info):
    """Tests that NaN loadings are rejected."""
    with pytest.raises(ParameterValidationError, match="missing or infinite"):
        extract(np.array([[0.8], [np.nan], [0.1]]), variable_info, analysis_type="fa")


def test_config_type_must_match(fa_loadings, variable_info):
    """Tests that interpretation args of another type are rejected."""
    with pytest.raises(ParameterValidationError):
        extract(fa_loadings, variable_info, build_interpretation_args("gm"), "fa")


def test_infer_analysis_type():
    """Tests inference of the analysis type from the input."""
    assert infer_analysis_type(FactorAnalysis()) == "fa"
    assert infer_analysis_type(GaussianMixture()) == "gm"
    assert infer_analysis_type({"loadings": []}) == "fa"
    assert infer_analysis_type({"means": []}) == "gm"
    assert infer_analysis_type(np.zeros((2, 2))) == "fa"
    assert infer_analysis_type(pd.DataFrame({"MR1": [0.8, 0.1]})) == "fa"
    assert infer_analysis_type([0.8, 0.1]) is None


def test_extract_gm_record(gm_data):
    """Tests extraction of a mixture record with memberships."""
    assert isinstance(gm_data, MixtureAnalysisData)
    assert gm_data.component_ids == ("Cluster_1", "Cluster_2")
    assert gm_data.n_observations == 6
    assert gm_data.classification.tolist() == [0, 0, 0, 1, 1, 1]
    np.testing.assert_allclose(gm_data.uncertainty, [0.05, 0.1, 0.15, 0.1, 0.05, 0.2])
    assert gm_data.fit_statistics == {"bic": pytest.approx(1234.567)}


def test_extract_sklearn_mixture(variable_info):
    """Tests extraction and scoring of a fitted GaussianMixture."""
    X = _two_blobs()
    model = GaussianMixture(n_components=2, covariance_type="diag", random_state=0).fit(X)
    data = extract({"model": model, "data": X}, variable_info)
    assert data.covariances.shape == (2, 3, 3)
    assert data.covariance_type == "diag"
    assert data.n_observations == 100
    assert data.memberships.shape == (100, 2)
    assert set(data.fit_statistics) == {"bic", "loglik"}
    assert sorted(data.cluster_sizes().round()) == [40, 60]


def test_extract_unscored_mixture(variable_info):
    """Tests that an unscored model has no memberships."""
    model = GaussianMixture(n_components=2, random_state=0).fit(_two_blobs())
    data = extract(model, variable_info)
    assert data.memberships is None
    assert data.n_observations is None


def test_expand_covariances():
    """Tests expansion of compact covariance storage."""
    assert expand_covariances(np.eye(2), "tied", 3, 2).shape == (3, 2, 2)
    spherical = expand_covariances(np.array([1.0, 4.0]), "spherical", 2, 2)
    np.testing.assert_allclose(spherical[1], 4 * np.eye(2))
    diag = expand_covariances(np.array([[1.0, 2.0], [3.0, 4.0]]), "diag", 2, 2)
    np.testing.assert_allclose(diag[0], np.diag([1.0, 2.0]))


def test_covariances_variables_first(gm_record, variable_info):
    """Tests that (d, d, k) covariance arrays are moved to (k, d, d)."""
    cov = np.stack([np.eye(3), 2 * np.eye(3)], axis=-1)
    gm_record["covariances"] = cov
    data = extract(gm_record, variable_info)
    np.testing.assert_allclose(data.covariances[1], 2 * np.eye(3))


def test_gm_validation_errors(gm_record, variable_info):
    """Tests the cross-checks of mixture records."""
    with pytest.raises(ParameterValidationError, match="n_clusters"):
        extract(gm_record, variable_info, build_interpretation_args("gm", n_clusters=3))
    with pytest.raises(DataMismatchError, match="profile_variables"):
        extract(
            gm_record,
            variable_info,
            build_interpretation_args("gm", profile_variables=["v9"]),
        )
    gm_record["proportions"] = [0.2, 0.3, 0.5]
    with pytest.raises(DataMismatchError, match="proportions"):
        extract(gm_record, variable_info)


def test_gm_defaults_without_optional_fields(variable_info):
    """Tests that a means-only record gets equal proportions and identity covariances."""
    means = np.array([[1.0, -1.0], [0.5, -0.5], [0.0, 0.0]])
    data = extract({"means": means}, variable_info)
    np.testing.assert_allclose(data.proportions, [0.5, 0.5])
    np.testing.assert_allclose(data.covariances[0], np.eye(3))
    assert data.average_uncertainty() is None


def test_emergency_rule_capped_by_variable_count():
    """Tests that n_emergency above the variable count uses every variable."""
    loadings = pd.Series([0.2, -0.28, 0.25], index=["v1", "v2", "v3"])
    summary = summarize_factor(loadings, {"v1": "a", "v2": "b", "v3": "c"}, 0.3, 10)
    assert summary.used_emergency_rule
    assert summary.indicators["variable"].tolist() == ["v2", "v3", "v1"]


def test_gm_observation_lengths_must_agree(variable_info):
    """Tests that classification and uncertainty of different lengths are rejected."""
    means = np.array([[1.0, -1.0], [0.5, -0.5], [0.0, 0.0]])
    record = {"means": means, "classification": [0, 0, 1, 1], "uncertainty": [0.1, 0.1, 0.2]}
    with pytest.raises(DataMismatchError, match="disagree in length"):
        extract(record, variable_info)


def test_gm_memberships_and_classification_lengths(gm_record, variable_info):
    """Tests that classification must cover the same rows as memberships."""
    gm_record["classification"] = [0, 1]
    with pytest.raises(DataMismatchError, match="disagree in length"):
        extract(gm_record, variable_info)


def test_gm_classification_range(variable_info):
    """Tests that labels outside 0..k-1 are rejected instead of shifted."""
    means = np.array([[1.0, -1.0], [0.5, -0.5], [0.0, 0.0]])
    record = {"means": means, "classification": [1, 1, 2, 2], "uncertainty": [0.05, 0.05, 0.6, 0.6]}
    with pytest.raises(DataMismatchError, match="0-based"):
        extract(record, variable_info)
    record["classification"] = [0.0, 0.5, 1.0, 1.0]
    with pytest.raises(DataMismatchError, match="integer"):
        extract(record, variable_info)
    record["classification"] = [0, 0, 1, 1]
    data = extract(record, variable_info)
    np.testing.assert_allclose(data.average_uncertainty(), [0.05, 0.6])
