import numpy as np
import pytest
from statsmodels.genmod.cov_struct import Autoregressive, Exchangeable, Independence

from ultrasound_its.errors import DataValidationError
from ultrasound_its.gee import fit_gee, gee_counterfactual, gee_design, make_cov_struct


@pytest.fixture(scope="module")
def early_fit(summary):
    return fit_gee(summary, "early_scan_rate")


def test_design(summary):
    y, X, weights, time = gee_design(summary, "early_scan_rate")
    assert list(X.columns) == ["const", "post", "months_since"]
    assert (weights == 80).all()
    assert time.tolist() == list(range(1, 44))
    assert y.between(0, 1).all()


def test_odds_ratios_are_exponentiated_coefficients(early_fit):
    table = early_fit.coef_table()
    np.testing.assert_allclose(table["odds_ratio"], np.exp(table["coef"]))
    assert (table["or_ci_lower"] < table["odds_ratio"]).all()
    assert (table["odds_ratio"] < table["or_ci_upper"]).all()
    assert early_fit.odds_ratio("post") == pytest.approx(np.exp(early_fit.params["post"]))


def test_detects_rise_in_early_scans(early_fit):
    assert early_fit.odds_ratio("post") > 1
    assert isinstance(early_fit.converged, bool)


def test_working_correlation(early_fit):
    assert early_fit.correlation == "ar1"
    assert -1 <= early_fit.dep_params <= 1


def test_naive_and_robust_share_estimates(summary, early_fit):
    robust = fit_gee(summary, "early_scan_rate", cov_type="robust")
    np.testing.assert_allclose(robust.params, early_fit.params)
    assert robust.cov_type == "robust"
    assert robust.bse.index.tolist() == early_fit.bse.index.tolist()


def test_counterfactual_matches_fit_before_intervention(early_fit, summary):
    cf = gee_counterfactual(early_fit)
    assert len(cf) == len(summary)
    pre = cf[cf["post"] == 0]
    post = cf[cf["post"] == 1]
    np.testing.assert_allclose(pre["counterfactual"], pre["fitted"])
    assert cf[["fitted", "counterfactual"]].stack().between(0, 1).all()
    assert (post["effect"].abs() > 0).all()
    assert (cf["n_records"] == 80).all()


@pytest.mark.parametrize("correlation", ["exchangeable", "independence"])
def test_other_correlation_structures(summary, correlation):
    fit = fit_gee(summary, "any_scan_rate", correlation=correlation)
    assert fit.correlation == correlation
    assert np.isfinite(fit.params).all()
    assert np.isfinite(fit.dep_params)
    if correlation == "independence":
        assert fit.dep_params == 0.0


def test_covariates(summary):
    fit = fit_gee(summary, "anc4_rate", ("hiv_rate",))
    assert fit.exog_names == ("const", "post", "months_since", "hiv_rate")
    cf = gee_counterfactual(fit)
    assert cf["counterfactual"].notna().all()


def test_lag_intervention(summary):
    fit = fit_gee(summary, "early_booking_rate", intervention="lag")
    assert fit.intervention_cols == ("post_lag", "months_since_lag")
    assert "post_lag" in fit.coef_table().index


def test_make_cov_struct():
    assert isinstance(make_cov_struct("ar1"), Autoregressive)
    assert isinstance(make_cov_struct("exchangeable"), Exchangeable)
    assert isinstance(make_cov_struct("independence"), Independence)
    with pytest.raises(ValueError):
        make_cov_struct("unstructured")


def test_invalid_cov_type(summary):
    with pytest.raises(ValueError, match="cov_type"):
        fit_gee(summary, "early_scan_rate", cov_type="hc3")


def test_rejects_non_proportion(summary):
    with pytest.raises(DataValidationError):
        fit_gee(summary, "mean_ga_scan")
