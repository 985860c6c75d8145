"""
Plotting of SWNE embeddings and NMF factors.

All plotting functions take an AnnData object processed with ``swnepy.tl``
and return matplotlib axes (or seaborn ``ClusterGrid`` for heatmaps), so they
can be combined into figures or saved with ``save_path``.
"""

# pylint: disable=C0103, W0511
from __future__ import annotations

import logging
import warnings

from typing import Sequence

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from anndata import AnnData
from matplotlib.axes import Axes
from matplotlib.colors import to_hex

from ._utils import _to_dense
from .tools import summarize_assoc_features


logger = logging.getLogger("swnepy")


def extract_colors(
    adata: AnnData,
    groupby: str,
    seed: int | None = 42,
    palette: str = "husl",
) -> dict[str, str]:
    """
    Assigns a color to each group, shuffled with ``seed`` so that
    neighbouring clusters are less likely to get similar colors.
    Colors are saved to ``adata.uns[f"{groupby}_colors"]`` in category order,
    so scanpy plots (e.g. of t-SNE) use the same colors as SWNE plots.

    :param adata: AnnData object
    :type adata: AnnData
    :param groupby: categorical column of ``adata.obs``
    :type groupby: str
    :param seed: defaults to 42
    :type seed: int | None, optional
    :param palette: seaborn palette name, defaults to "husl"
    :type palette: str, optional
    :return: mapping from group to hex color
    """
    groups = _as_categorical(adata, groupby).cat.categories
    colors = [to_hex(c) for c in sns.color_palette(palette, len(groups))]
    if seed is not None:
        colors = [str(c) for c in np.random.default_rng(seed).permutation(colors)]

    adata.uns[f"{groupby}_colors"] = np.array(colors, dtype=object)
    return dict(zip(groups.astype(str), colors))


def _as_categorical(adata: AnnData, groupby: str) -> pd.Series:
    assert groupby in adata.obs, f"`{groupby}` not found in adata.obs"
    if not isinstance(adata.obs[groupby].dtype, pd.CategoricalDtype):
        adata.obs[groupby] = adata.obs[groupby].astype(str).astype("category")
    return adata.obs[groupby]


def _group_colors(adata: AnnData, groupby: str, seed: int | None) -> dict[str, str]:
    groups = _as_categorical(adata, groupby).cat.categories
    colors = adata.uns.get(f"{groupby}_colors")
    if colors is None or len(colors) != len(groups):
        return extract_colors(adata, groupby, seed=seed)
    return dict(zip(groups.astype(str), colors))


def _scatter_groups(
    ax: Axes,
    coords: np.ndarray,
    groups: pd.Series | None,
    colors: dict[str, str] | None,
    alpha: float,
    pt_size: float,
    do_label: bool,
    label_size: float,
    show_legend: bool,
) -> None:
    if groups is None:
        ax.scatter(coords[:, 0], coords[:, 1], s=pt_size, c="lightgrey", alpha=alpha, linewidths=0)
        return

    labels = groups.astype(str).to_numpy()
    for group, color in colors.items():
        mask = labels == group
        if not mask.any():
            continue
        ax.scatter(
            coords[mask, 0],
            coords[mask, 1],
            s=pt_size,
            c=color,
            alpha=alpha,
            linewidths=0,
            label=group,
        )
        if do_label:
            x, y = np.median(coords[mask], axis=0)
            ax.text(x, y, group, fontsize=label_size, ha="center", va="center", weight="bold")

    if show_legend:
        ax.legend(
            loc="center left",
            bbox_to_anchor=(1, 0.5),
            frameon=False,
            markerscale=max(20 / pt_size, 1) ** 0.5,
        )


def _finish(ax: Axes, show_axes: bool, save_path: str | None) -> Axes:
    if not show_axes:
        ax.set_xticks([])
        ax.set_yticks([])
        for spine in ax.spines.values():
            spine.set_visible(False)
    if save_path is not None:
        ax.figure.savefig(save_path, bbox_inches="tight")
        logger.info("Figure is saved in %s", save_path)
    return ax


def swne(
    adata: AnnData,
    groupby: str | None = None,
    basis: str = "X_swne",
    key: str = "swne",
    alpha_plot: float = 0.25,
    do_label: bool = False,
    label_size: float = 10,
    pt_size: float = 5,
    show_legend: bool = True,
    show_factors: bool = True,
    show_features: bool = True,
    seed: int | None = 42,
    figsize: tuple[float, float] = (6, 6),
    ax: Axes | None = None,
    save_path: str | None = None,
) -> Axes:
    """
    Plots SWNE embedding: cells colored by group, factors as labeled markers
    and embedded genes as labels.

    :param adata: AnnData object after ``tl.embed_swne``
    :type adata: AnnData
    :param groupby: categorical column of ``adata.obs`` to color cells, defaults to None
    :type groupby: str | None, optional
    :param alpha_plot: cells opacity, defaults to 0.25
    :type alpha_plot: float, optional
    :param do_label: if to put group labels at group medians, defaults to False
    :type do_label: bool, optional
    :param label_size: font size of labels, defaults to 10
    :type label_size: float, optional
    :param pt_size: cell marker size, defaults to 5
    :type pt_size: float, optional
    :param show_legend: defaults to True
    :type show_legend: bool, optional
    :param seed: seed for group colors if they are not set yet, defaults to 42
    :type seed: int | None, optional
    :param ax: axes to draw on, defaults to None
    :type ax: Axes | None, optional
    :param save_path: where to save the figure, defaults to None
    :type save_path: str | None, optional
    :return: axes with the plot
    """
    assert basis in adata.obsm, f"`{basis}` not found in adata.obsm. First, run swnepy.tl.embed_swne"
    if ax is None:
        _, ax = plt.subplots(figsize=figsize)

    coords = np.asarray(adata.obsm[basis])
    groups = colors = None
    if groupby is not None:
        colors = _group_colors(adata, groupby, seed)
        groups = adata.obs[groupby]

    _scatter_groups(
        ax, coords, groups, colors, alpha_plot, pt_size, do_label, label_size, show_legend
    )

    if show_factors and key in adata.uns:
        H_coords = adata.uns[key]["H_coords"]
        ax.scatter(H_coords["x"], H_coords["y"], s=pt_size * 8, c="darkblue", marker="o")
        for _, row in H_coords.iterrows():
            if row["name"]:
                ax.annotate(
                    row["name"],
                    (row["x"], row["y"]),
                    xytext=(3, 3),
                    textcoords="offset points",
                    fontsize=label_size,
                    color="darkblue",
                )

    if show_features and key in adata.uns:
        feature_coords = adata.uns[key]["feature_coords"]
        if len(feature_coords):
            ax.scatter(feature_coords["x"], feature_coords["y"], s=pt_size * 4, c="darkred", marker="^")
            for _, row in feature_coords.iterrows():
                ax.annotate(
                    row["name"],
                    (row["x"], row["y"]),
                    xytext=(3, -8),
                    textcoords="offset points",
                    fontsize=label_size,
                    color="darkred",
                    style="italic",
                )

    return _finish(ax, show_axes=False, save_path=save_path)


def feature_swne(
    adata: AnnData,
    feature: str,
    basis: str = "X_swne",
    layer: str | None = "swne_norm",
    alpha_plot: float = 0.5,
    pt_size: float = 5,
    quantile: float = 0.99,
    cmap: str = "Reds",
    figsize: tuple[float, float] = (6, 6),
    ax: Axes | None = None,
    save_path: str | None = None,
) -> Axes:
    """
    Plots SWNE embedding with cells colored by a gene's expression
    (from ``adata.layers[layer]``) or a numeric ``adata.obs`` column.
    Values above the ``quantile`` are capped.

    :param adata: AnnData object after ``tl.embed_swne``
    :type adata: AnnData
    :param feature: gene name or numeric ``adata.obs`` column
    :type feature: str
    :return: axes with the plot
    """
    if feature in adata.obs:
        if not pd.api.types.is_numeric_dtype(adata.obs[feature]):
            raise ValueError(
                f"`{feature}` is not numeric, use swnepy.pl.swne with `groupby` for categorical columns"
            )
        values = adata.obs[feature].to_numpy(dtype=float)
    elif feature in adata.var_names:
        X = adata.X if layer is None else adata.layers[layer]
        values = _to_dense(X[:, adata.var_names.get_loc(feature)]).ravel()
    else:
        raise KeyError(f"`{feature}` not found neither in adata.obs nor in adata.var_names")

    if ax is None:
        _, ax = plt.subplots(figsize=figsize)

    coords = np.asarray(adata.obsm[basis])
    order = np.argsort(values)
    sc_ = ax.scatter(
        coords[order, 0],
        coords[order, 1],
        c=values[order],
        s=pt_size,
        alpha=alpha_plot,
        cmap=cmap,
        vmin=np.min(values),
        vmax=np.quantile(values, quantile),
        linewidths=0,
    )
    ax.figure.colorbar(sc_, ax=ax, shrink=0.5)
    ax.set_title(feature)
    return _finish(ax, show_axes=False, save_path=save_path)


def dims(
    adata: AnnData,
    basis: str = "X_tsne",
    groupby: str | None = None,
    alpha_plot: float = 0.3,
    pt_size: float = 5,
    do_label: bool = True,
    label_size: float = 10,
    show_legend: bool = False,
    show_axes: bool = False,
    seed: int | None = 42,
    figsize: tuple[float, float] = (6, 6),
    ax: Axes | None = None,
    save_path: str | None = None,
) -> Axes:
    """Scatter plot of any 2D embedding (e.g. t-SNE) with SWNE group colors."""
    assert basis in adata.obsm, f"`{basis}` not found in adata.obsm"
    if ax is None:
        _, ax = plt.subplots(figsize=figsize)

    groups = colors = None
    if groupby is not None:
        colors = _group_colors(adata, groupby, seed)
        groups = adata.obs[groupby]

    _scatter_groups(
        ax,
        np.asarray(adata.obsm[basis])[:, :2],
        groups,
        colors,
        alpha_plot,
        pt_size,
        do_label,
        label_size,
        show_legend,
    )
    if show_axes:
        name = basis[2:] if basis.startswith("X_") else basis
        ax.set_xlabel(f"{name}_1")
        ax.set_ylabel(f"{name}_2")
    return _finish(ax, show_axes=show_axes, save_path=save_path)


def num_factors(
    adata: AnnData,
    key: str = "swne_num_factors",
    figsize: tuple[float, float] = (5, 4),
    ax: Axes | None = None,
    save_path: str | None = None,
) -> Axes:
    """Reconstruction error reduction per added factors, data vs permuted null."""
    assert key in adata.uns, f"`{key}` not found in adata.uns. First, run swnepy.tl.find_num_factors"
    df = adata.uns[key]["errors"]
    if not isinstance(df, pd.DataFrame):
        df = pd.DataFrame(df)

    if ax is None:
        _, ax = plt.subplots(figsize=figsize)

    ax.plot(df["k"], df["err_del"], marker="o", label="data")
    ax.plot(df["k"], df["err_null_del"], marker="o", linestyle="--", label="null")
    ax.axvline(adata.uns[key]["k"], color="grey", linestyle=":")
    ax.set_xlabel("Number of factors")
    ax.set_ylabel("Reconstruction error reduction")
    ax.legend(frameon=False)
    return _finish(ax, show_axes=True, save_path=save_path)


def factor_heatmap(
    adata: AnnData,
    features: Sequence[str] | None = None,
    features_return: int = 1,
    loadings: str = "NMF",
    clustering: str | None = "col",
    cmap: str = "Reds",
    figsize: tuple[float, float] = (7, 7),
    save_path: str | None = None,
) -> sns.matrix.ClusterGrid:
    """
    Heatmap of gene loadings, genes in rows and factors in columns.
    By default shows the top ``features_return`` genes of each factor.

    :param adata: AnnData object after ``tl.run_nmf``
    :type adata: AnnData
    :param features: genes to show, defaults to None
    :type features: Sequence[str] | None, optional
    :param features_return: top genes per factor if ``features`` is None, defaults to 1
    :type features_return: int, optional
    :param clustering: "row", "col", "both" or None, defaults to "col"
    :type clustering: str | None, optional
    :return: seaborn ClusterGrid
    """
    if clustering not in ("row", "col", "both", None):
        raise ValueError("`clustering` should be `row`, `col`, `both` or None.")

    if features is None:
        features = summarize_assoc_features(
            adata, features_return=features_return, loadings=loadings
        )["feature"].unique()

    features = list(dict.fromkeys(features))
    missing = [f for f in features if f not in adata.var_names]
    if missing:
        warnings.warn(f"Features not found in adata.var_names are skipped: {missing}")
        features = [f for f in features if f in adata.var_names]
    if not features:
        raise ValueError("None of `features` found in adata.var_names.")

    factors = adata.uns.get("nmf", {}).get("factors")
    W = pd.DataFrame(
        np.asarray(adata.varm[loadings])[adata.var_names.get_indexer(features)],
        index=features,
        columns=factors,
    )

    row_cluster = clustering in ("row", "both") and W.shape[0] > 1
    col_cluster = clustering in ("col", "both") and W.shape[1] > 1
    grid = sns.clustermap(
        W,
        row_cluster=row_cluster,
        col_cluster=col_cluster,
        cmap=cmap,
        figsize=figsize,
        xticklabels=True,
        yticklabels=True,
    )
    if save_path is not None:
        grid.savefig(save_path, bbox_inches="tight")
        logger.info("Figure is saved in %s", save_path)
    return grid
