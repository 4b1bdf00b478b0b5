"""
Physics objects for the multi-jet analysis.

This module provides the per-event jet and trigger-object records,
angular distances and the offline-to-online trigger association.
Four-momenta are handled with the vector package.
"""

import numpy as np
import vector


def delta_phi(phi1, phi2):
    """
    Azimuthal difference wrapped into [-pi, pi).

    Works for scalars and NumPy arrays alike.
    """
    return (np.asarray(phi1) - np.asarray(phi2) + np.pi) % (2 * np.pi) - np.pi


def delta_r(eta1, phi1, eta2, phi2):
    """
    Angular distance dR = sqrt(deta^2 + dphi^2).

    Parameters
    ----------
    eta1, phi1 : float or array-like
        Pseudorapidity and azimuth of the first object(s).
    eta2, phi2 : float or array-like
        Pseudorapidity and azimuth of the second object(s).

    Returns
    -------
    float or numpy.ndarray
        Broadcast angular distance.
    """
    deta = np.asarray(eta1) - np.asarray(eta2)
    dphi = delta_phi(phi1, phi2)
    return np.sqrt(deta**2 + dphi**2)


class TriggerObject:
    """An online object reconstructed by a trigger filter."""

    def __init__(self, pt, eta, phi, energy=0.0):
        self.pt = float(pt)
        self.eta = float(eta)
        self.phi = float(phi)
        self.energy = float(energy)

    def __repr__(self):
        return f"TriggerObject(pt={self.pt:.1f}, eta={self.eta:.2f}, phi={self.phi:.2f})"


class Jet:
    """
    A reconstructed jet of the current event.

    Parameters
    ----------
    pt, eta, phi, energy : float
        Kinematics [GeV, -, rad, GeV].
    id_loose : bool
        Loose identification flag.
    btag : float
        Default b-tag discriminator.
    discriminators : dict, optional
        Additional named discriminators, e.g. {"btag_deepb": 0.7}.
    """

    def __init__(self, pt, eta, phi, energy, id_loose=True, btag=0.0, discriminators=None):
        self.pt = float(pt)
        self.eta = float(eta)
        self.phi = float(phi)
        self.energy = float(energy)
        self.id_loose = bool(id_loose)
        self._btag = float(btag)
        self._discriminators = dict(discriminators or {})
        self._matched = set()

    @classmethod
    def from_record(cls, record, branches):
        """
        Build a jet from one entry of the jet collection.

        ``branches`` maps the jet attributes (pt, eta, phi, energy,
        id_loose, btag) to the record keys; every other key in the
        record is kept as a named discriminator.
        """
        used = set(branches.values())
        discriminators = {k: v for k, v in record.items() if k not in used}
        return cls(
            pt=record[branches["pt"]],
            eta=record[branches["eta"]],
            phi=record[branches["phi"]],
            energy=record[branches["energy"]],
            id_loose=record[branches["id_loose"]],
            btag=record[branches["btag"]],
            discriminators=discriminators,
        )

    def btag(self, kind=None):
        """Default discriminator, or the named one when ``kind`` is given."""
        if kind is None:
            return self._btag
        return self._discriminators[kind]

    def delta_r(self, other):
        return float(delta_r(self.eta, self.phi, other.eta, other.phi))

    def p4(self):
        return vector.obj(pt=self.pt, eta=self.eta, phi=self.phi, E=self.energy)

    def add_match(self, label):
        self._matched.add(label)

    def matched(self, label):
        return label in self._matched

    def __repr__(self):
        return f"Jet(pt={self.pt:.1f}, eta={self.eta:.2f}, phi={self.phi:.2f})"


def invariant_mass(jet1, jet2):
    """Invariant mass of a pair of jets [GeV]."""
    return float((jet1.p4() + jet2.p4()).mass)


def match_trigger_objects(jets, trigger_objects, delta_r_max=0.5):
    """
    Associate offline jets with online trigger objects.

    A jet is marked as matched to a label when at least one trigger
    object of that label lies within ``delta_r_max``.

    Parameters
    ----------
    jets : list of Jet
        Jets to annotate (modified in place).
    trigger_objects : dict
        Label -> list of TriggerObject.
    delta_r_max : float
        Matching radius.
    """
    for label, objects in trigger_objects.items():
        if not objects:
            continue
        eta = np.array([o.eta for o in objects])
        phi = np.array([o.phi for o in objects])
        for jet in jets:
            if np.any(delta_r(jet.eta, jet.phi, eta, phi) < delta_r_max):
                jet.add_match(label)
