"""
Histograms filled by the multi-jet analysis.

The full set is declared once per run for the configured number of
jets. Histogram names are only used when the set is written out.
"""

import os

import numpy as np
import matplotlib.pyplot as plt
import uproot
import hist
from hist import Hist

from jetsel.analysis.physics import invariant_mass


def _hist(nbins, lo, hi, label=""):
    # Weight storage keeps sum of squared weights, like TH1::Sumw2
    return Hist(hist.axis.Regular(nbins, lo, hi, label=label), storage=hist.storage.Weight())


class JetHistograms:
    """
    Jet multiplicities, leading-pair mass and per-position kinematics.

    Parameters
    ----------
    njets : int
        Number of leading positions with their own histograms.
    suffix : str
        Appended to every name on output (e.g. "_csv").
    with_ptmin30 : bool
        Also book the multiplicity of jets with pt >= 30 GeV.
    """

    def __init__(self, njets, suffix="", with_ptmin30=False):
        self.suffix = suffix
        self.n = _hist(30, 0, 30, "Number of jets")
        self.n_ptmin20 = _hist(30, 0, 30, r"Number of jets with $p_T \geq 20$ GeV")
        self.n_ptmin30 = (
            _hist(30, 0, 30, r"Number of jets with $p_T \geq 30$ GeV") if with_ptmin30 else None
        )
        self.m12 = _hist(50, 0, 1000, r"$m_{12}$ [GeV]")
        self.pt = []
        self.eta = []
        self.phi = []
        self.btag = []
        for j in range(njets):
            if j < 2:
                self.pt.append(_hist(100, 0, 1000, rf"Jet {j} $p_T$ [GeV]"))
            else:
                self.pt.append(_hist(50, 0, 200, rf"Jet {j} $p_T$ [GeV]"))
            self.eta.append(_hist(100, -5, 5, rf"Jet {j} $\eta$"))
            self.phi.append(_hist(100, -4, 4, rf"Jet {j} $\phi$"))
            self.btag.append(_hist(100, 0, 1, f"Jet {j} b-tag discriminator"))

    def fill(self, jets):
        """Fill from the id-filtered, pt-ordered jets of one event."""
        self.n.fill(len(jets))
        self.n_ptmin20.fill(sum(1 for jet in jets if jet.pt >= 20.0))
        if self.n_ptmin30 is not None:
            self.n_ptmin30.fill(sum(1 for jet in jets if jet.pt >= 30.0))
        self.m12.fill(invariant_mass(jets[0], jets[1]))
        for j in range(len(self.pt)):
            jet = jets[j]
            self.pt[j].fill(jet.pt)
            self.eta[j].fill(jet.eta)
            self.phi[j].fill(jet.phi)
            self.btag[j].fill(jet.btag())

    def items(self):
        s = self.suffix
        yield f"n{s}", self.n
        yield f"n_ptmin20{s}", self.n_ptmin20
        if self.n_ptmin30 is not None:
            yield f"n_ptmin30{s}", self.n_ptmin30
        yield f"m12{s}", self.m12
        for j in range(len(self.pt)):
            yield f"pt_{j}{s}", self.pt[j]
            yield f"eta_{j}{s}", self.eta[j]
            yield f"phi_{j}{s}", self.phi[j]
            yield f"btag_{j}{s}", self.btag[j]


class HistogramSet:
    """All histograms of one analysis run."""

    def __init__(self, njets):
        self.njets = njets
        self.total = _hist(1, 0.0, 1.0, "All events")
        self.total_selected = _hist(1, 0.0, 1.0, "Selected events")
        self.preselection = JetHistograms(njets)
        self.selected = JetHistograms(njets, suffix="_csv", with_ptmin30=True)

    def count_event(self):
        self.total.fill(0.5)

    def fill_preselection(self, jets):
        self.preselection.fill(jets)

    def fill_selected(self, jets):
        self.total_selected.fill(0.5)
        self.selected.fill(jets)

    def items(self):
        """(name, histogram) pairs in output order."""
        yield "total", self.total
        yield "totalSelected", self.total_selected
        yield from self.preselection.items()
        yield from self.selected.items()

    def __iadd__(self, other):
        if other.njets != self.njets:
            raise ValueError(
                f"cannot merge histograms booked for {other.njets} jets into {self.njets}"
            )
        for (name, h), (_, h_other) in zip(self.items(), other.items()):
            h += h_other
        return self

    def write(self, path):
        """Write every histogram to a new ROOT file."""
        with uproot.recreate(path) as f:
            for name, h in self.items():
                f[name] = h

    def plot(self, outdir):
        """
        Save one PNG per histogram with Poisson-like error bars.

        Returns the list of written file paths.
        """
        os.makedirs(outdir, exist_ok=True)
        written = []
        for name, h in self.items():
            counts = h.values()
            edges = h.axes[0].edges
            centers = 0.5 * (edges[:-1] + edges[1:])
            errors = np.sqrt(h.variances())

            fig, ax = plt.subplots()
            ax.step(edges[:-1], counts, where="post", label="Events")
            ax.errorbar(
                centers,
                counts,
                yerr=errors,
                fmt=".",
                markersize=2,
                linewidth=0.5,
                label="Statistical errors",
            )
            ax.set_xlabel(h.axes[0].label)
            ax.set_ylabel("Events")
            ax.set_title(name)
            ax.legend(loc="best", frameon=False)
            fig.tight_layout()
            path = os.path.join(outdir, f"{name}.png")
            fig.savefig(path)
            plt.close(fig)
            written.append(path)
        return written
