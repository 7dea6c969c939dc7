import numpy as np
from typing import Optional

import matplotlib.pyplot as plt

from likelihood.track_model import TrackData, TrackParameters, state_index
from likelihood.track_nll import TrackLikelihoodResult


def plot_track_fit(
    data: TrackData,
    params: TrackParameters,
    result: Optional[TrackLikelihoodResult] = None,
    title: str | None = "Track fit: fixes and latent positions",
    save_path: str | None = None,
    show: bool = False,
):
    """
    Plot observed fixes, latent positions and observation uncertainty.

    Visual conventions:
    - Fixes: scatter points, one color per quality class
    - Latent positions: solid line through the state sequence
    - Uncertainty: (+-)2*std error bars per fix from its quality class

    Parameters
    ----------
    data : TrackData
        Observed track.
    params : TrackParameters
        Parameters holding the latent positions to draw.
    result : TrackLikelihoodResult, optional
        Evaluation whose per-class observation std devs are drawn.
    title : str, optional
        Figure title.
    save_path : str, optional
        Path to save the figure.
    show : bool
        Call plt.show() after drawing.

    Returns
    -------
    matplotlib.figure.Figure
    """

    fig, ax = plt.subplots(figsize=(8, 7))

    colors = plt.rcParams['axes.prop_cycle'].by_key()['color']

    # -------------------------
    # Fixes
    # -------------------------
    for q in np.unique(data.qual):
        sel = data.qual == q
        color = colors[int(q) % len(colors)]

        if result is not None:
            ax.errorbar(
                data.lon[sel],
                data.lat[sel],
                xerr=2 * result.sd_obs[1, q],
                yerr=2 * result.sd_obs[0, q],
                fmt='none',
                ecolor=color,
                alpha=0.25,
                linewidth=1.0
            )

        ax.scatter(
            data.lon[sel],
            data.lat[sel],
            color=color,
            alpha=0.6,
            s=28,
            marker='o',
            edgecolor='none',
            label=f"Fixes, class {q}"
        )

    # -------------------------
    # Latent positions
    # -------------------------
    if data.n > 0:
        used = np.unique(state_index(data.dt))
        ax.plot(
            params.mu[1, used],
            params.mu[0, used],
            color='k',
            linewidth=2.0,
            label="Latent position"
        )

    # -------------------------
    # Styling
    # -------------------------
    ax.set_xlabel("Longitude", fontsize=13)
    ax.set_ylabel("Latitude", fontsize=13)
    if title is not None:
        ax.set_title(title, fontsize=14, pad=10)

    ax.grid(True, which="both", linestyle="--", alpha=0.25)
    ax.legend(
        loc="best",
        frameon=False,
        fontsize=10
    )

    fig.tight_layout()

    # -------------------------
    # Save or return
    # -------------------------
    if save_path is not None:
        plt.savefig(save_path, dpi=150, bbox_inches="tight")

    if show:
        plt.show()

    return fig
