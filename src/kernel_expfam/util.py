import jax, jax.numpy as jnp
from jax import Array
import matplotlib.pyplot as plt
import seaborn as sns
import numpy as np
import pandas as pd

from kernel_expfam.estimator import KernelExpFamily


def sample_gaussian_mixture(
    key: Array, num_samples: int, means: Array, scale: float = 0.5
) -> Array:
    """
    Draws ``num_samples`` points from an equally weighted isotropic Gaussian mixture.

    Args:
        key: JAX PRNG key.
        num_samples: number of samples ``n``.
        means: shape ``(k, d)`` component means.
        scale: common standard deviation of the components.

    Returns:
        Shape ``(d, n)`` array, one sample per column, the layout expected by the estimators.
    """
    means = jnp.atleast_2d(jnp.asarray(means, dtype=jnp.float64))
    key_c, key_z = jax.random.split(key)
    component = jax.random.randint(key_c, (num_samples,), 0, means.shape[0])
    noise = jax.random.normal(key_z, (num_samples, means.shape[1]))
    return (means[component] + scale * noise).T


def agreement(est_a: KernelExpFamily, est_b: KernelExpFamily, X_test: Array) -> float:
    """
    Mean absolute difference of the two fitted statistics over the columns of ``X_test``.
    """
    return float(np.mean(np.abs(est_a.log_pdf_multiple(X_test) - est_b.log_pdf_multiple(X_test))))


def make_agreement_plot(result_df: pd.DataFrame, metric: str = "log_agreement", fig_mul=3):
    """
    One heatmap of ``metric`` over (ln sigma, ln lambda) per basis size ``m``.
    """
    df = result_df.copy()
    df_mean = df.groupby(["num_basis", "ln_sigma", "ln_lmbda"], as_index=False)[metric].mean()

    sizes = sorted(df_mean["num_basis"].unique())
    vmin, vmax = df_mean[metric].min(), df_mean[metric].max()

    fig, axes = plt.subplots(
        1, len(sizes), figsize=(fig_mul * len(sizes), fig_mul), squeeze=False
    )

    for ax, m in zip(axes.flat, sizes):
        heat = (
            df_mean[df_mean["num_basis"] == m]
            .pivot(index="ln_lmbda", columns="ln_sigma", values=metric)
            .sort_index()
        )
        sns.heatmap(
            heat,
            ax=ax,
            cmap="viridis",
            vmin=vmin,
            vmax=vmax,
            cbar=ax is axes.flat[-1],
            annot=True,
            fmt=".1f",
        )
        ax.set_title(rf"$m = {m}$", fontsize=12)
        ax.set_xlabel(r"$\ln \sigma$", fontsize=10)
        ax.set_ylabel(r"$\ln \lambda$", fontsize=10)
        ax.invert_yaxis()

    plt.tight_layout()
    return fig, axes
