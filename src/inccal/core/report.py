#########################################################################################
##
##                     OBSERVABILITY REPORTS (DISPLAY & PLOTTING)
##                                (core/report.py)
##
#########################################################################################

# IMPORTS ===============================================================================

import numpy as np


# DISPLAY HELPERS =======================================================================

def _print_admission_table(ret, W=72):
    """Print the admission flags and information gain of a return value."""
    dash = "-" * W

    def _flag(v):
        return "✓" if v else "✗"

    print(f"  {'Batch accepted':<30} {_flag(ret.batch_accepted):>8}")
    print(f"  {'Solution valid':<30} {_flag(ret.solution_valid):>8}")
    print(f"  {'Informative batch':<30} {_flag(ret.is_informative_batch):>8}")
    print(f"  {'Information gain':<30} {ret.information_gain:>12.4g}")
    print(dash)


def _print_rank_table(ret, W=72):
    """Print ranks of the psi and theta partitions with their tolerances."""
    dash = "-" * W
    print(f"  {'Partition':<22} {'Rank':>8} {'Deficiency':>12} {'Tolerance':>14}")
    print(dash)
    print(f"  {'J_psi  (QR)':<22} {ret.rank_psi:>8d} "
          f"{ret.rank_psi_deficiency:>12d} {ret.qr_tolerance:>14.4g}")
    print(f"  {'A_theta (SVD)':<22} {ret.rank_theta:>8d} "
          f"{ret.rank_theta_deficiency:>12d} {ret.svd_tolerance:>14.4g}")
    print(dash)


def _print_spectrum(singular_values, singular_values_scaled, rank, W=72):
    """Print the raw and scaled singular values, flagging truncated ones."""
    if len(singular_values) == 0:
        print("  No marginalized columns")
        return

    print(f"  {'#':>3} {'sigma':>14} {'sigma (scaled)':>16}  {'Kept':>4}")
    for i, (s, s_sc) in enumerate(zip(singular_values, singular_values_scaled)):
        flag = "✓" if i < rank else "✗"
        print(f"  {i:>3d} {s:>14.4g} {s_sc:>16.4g}  {flag:>4}")
    print("-" * W)


def _print_solve_summary(ret, W=72):
    """Print iterations, costs and resource counters."""
    print(f"  {'Iterations':<30} {ret.num_iterations:>12d}")
    print(f"  {'Cost start / final':<30} {ret.j_start:>12.4g} {ret.j_final:>12.4g}")
    print(f"  {'Elapsed time [s]':<30} {ret.elapsed_time:>12.4g}")
    print(f"  {'Memory (peak) [bytes]':<30} {ret.memory_usage:>12d} "
          f"{ret.peak_memory_usage:>12d}")
    print(f"  {'Flops':<30} {ret.num_flops:>12.4g}")


# PLOT HELPERS ==========================================================================

def _plot_singular_values(singular_values, singular_values_scaled, rank, axes,
                          title_raw, title_scaled):
    """Render raw and scaled spectra as bar charts onto *axes* (length 2)."""
    from matplotlib.patches import Patch

    for ax, sv, title in (
        (axes[0], np.asarray(singular_values), title_raw),
        (axes[1], np.asarray(singular_values_scaled), title_scaled),
    ):
        kept = np.arange(sv.size) < rank
        colors = ["steelblue" if k else "salmon" for k in kept]
        ax.bar(range(sv.size), sv, color=colors)

        pos = sv[sv > 0.0]
        if pos.size > 1 and pos.max() / pos.min() > 100.0:
            ax.set_yscale("log")

        ax.set_xticks(range(sv.size))
        ax.set_xticklabels([f"σ{i + 1}" for i in range(sv.size)], fontsize=9)
        ax.set_xlabel("Direction")
        ax.set_ylabel("Singular value")
        ax.set_title(title)
        ax.grid(True, axis="y", alpha=0.3)

        if not all(kept):
            ax.legend(handles=[
                Patch(facecolor="steelblue", label="Observable"),
                Patch(facecolor="salmon",    label="Unobservable (truncated)"),
            ], fontsize=8)
