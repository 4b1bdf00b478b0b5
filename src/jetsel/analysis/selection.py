"""
Selection logic for the multi-jet b-tag analysis.

This module defines the per-position selection parameters, the jet
selection stages (multiplicity, kinematics, angular separation, b-tag,
online matching) and the cascade that evaluates them in order while
filling a cut flow.
"""

MAX_JETS = 4

JET_COUNT_WORDS = {2: "Double", 3: "Triple", 4: "Quad"}

DEFAULT_DISCRIMINATORS = ("btag_deepb", "btag_deepbb")


class SelectionParameters:
    """
    Cut values fixed for the whole run.

    Per-position sequences (``ptmin``, ``etamax``, ``btagmin``) hold
    exactly ``njets`` values, one per leading jet. Giving ``nonbtag``
    switches the last position from a b-tag to an anti-b-tag
    requirement (control region); ``btagmin[-1]`` is then ignored.
    """

    def __init__(
        self,
        njets=MAX_JETS,
        ptmin=None,
        etamax=None,
        btagmin=None,
        nonbtag=None,
        drmin=1.0,
        detamax=6.3,
        use_summed_discriminator=False,
        discriminators=DEFAULT_DISCRIMINATORS,
        trigger_objects=(),
        matched_jets=2,
        match_delta_r=0.5,
    ):
        self.njets = int(njets)
        self.ptmin = tuple(float(v) for v in (ptmin if ptmin is not None else [0.0] * self.njets))
        self.etamax = tuple(float(v) for v in (etamax if etamax is not None else [1.0] * self.njets))
        self.btagmin = tuple(float(v) for v in (btagmin if btagmin is not None else [0.0] * self.njets))
        self.nonbtag = None if nonbtag is None else float(nonbtag)
        self.drmin = float(drmin)
        self.detamax = float(detamax)
        self.use_summed_discriminator = bool(use_summed_discriminator)
        self.discriminators = tuple(discriminators)
        self.trigger_objects = tuple(trigger_objects)
        self.matched_jets = int(matched_jets)
        self.match_delta_r = float(match_delta_r)
        self.validate()

    @classmethod
    def from_config(cls, config):
        """
        Build the parameters from the ``selection`` and ``trigger``
        sections of the analysis configuration.
        """
        sel = config.get("selection", {})
        trig = config.get("trigger", {})
        return cls(
            njets=sel.get("njets", MAX_JETS),
            ptmin=sel.get("ptmin"),
            etamax=sel.get("etamax"),
            btagmin=sel.get("btagmin"),
            nonbtag=sel.get("nonbtag"),
            drmin=sel.get("drmin", 1.0),
            detamax=sel.get("detamax", 6.3),
            use_summed_discriminator=sel.get("deepb", False),
            discriminators=sel.get("discriminators", DEFAULT_DISCRIMINATORS),
            trigger_objects=trig.get("objects", []),
            matched_jets=trig.get("matched_jets", 2),
            match_delta_r=trig.get("match_delta_r", 0.5),
        )

    @property
    def isbbbb(self):
        return self.nonbtag is None

    def validate(self):
        if not 2 <= self.njets <= MAX_JETS:
            raise ValueError(f"Invalid value for njets: outside of interval [2;{MAX_JETS}].")
        for name in ("ptmin", "etamax", "btagmin"):
            values = getattr(self, name)
            if len(values) != self.njets:
                raise ValueError(
                    f"Invalid value for {name}: expected {self.njets} values, got {len(values)}."
                )
        for i, value in enumerate(self.ptmin):
            if value < 0:
                raise ValueError(f"Invalid value for ptmin{i + 1}: less than 0.")
        for i, value in enumerate(self.btagmin):
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"Invalid value for btagmin{i + 1}: outside of interval [0;1].")
        if self.nonbtag is not None and not 0.0 <= self.nonbtag <= 1.0:
            raise ValueError("Invalid value for nonbtag: outside of interval [0;1].")
        if self.drmin < 0:
            raise ValueError("Invalid value for drmin: less than 0.")
        if self.detamax < 0:
            raise ValueError("Invalid value for detamax: less than 0.")
        if len(self.discriminators) != 2:
            raise ValueError("Exactly two discriminators are summed for the deepb score.")
        if not 0 <= self.matched_jets <= self.njets:
            raise ValueError(f"Invalid value for matched_jets: outside of interval [0;{self.njets}].")

    def describe(self):
        """Human-readable dump of the parameters, one per line."""
        lines = [f"njets={self.njets}"]
        if self.use_summed_discriminator:
            lines.append("Using btag DeepFlavour ({} + {}).".format(*self.discriminators))
        else:
            lines.append("Using normal b-tagging.")
        lines.append("ptmin=" + " ".join(f"{v:g}" for v in self.ptmin))
        lines.append("btagmin=" + " ".join(f"{v:g}" for v in self.btagmin))
        lines.append(f"nonbtag={self.nonbtag:g}" if self.nonbtag is not None else "No nonbtag.")
        lines.append("etamax=" + " ".join(f"{v:g}" for v in self.etamax))
        lines.append(f"dRmin={self.drmin:g}")
        lines.append(f"detamax={self.detamax:g}")
        lines.append(
            f"triggerObjects (n={len(self.trigger_objects)}): " + " ".join(self.trigger_objects)
        )
        return lines


# Object-level stages

def loose_jets(jets):
    """
    Identification filter: keep jets passing the loose ID, ordered by
    descending transverse momentum.
    """
    selected = [jet for jet in jets if jet.id_loose]
    selected.sort(key=lambda jet: jet.pt, reverse=True)
    return selected


def select_multiplicity(jets, njets):
    return len(jets) >= njets


def select_kinematic(jets, njets, ptmin, etamax):
    """
    Require pt >= ptmin[j] and |eta| <= etamax[j] for the leading
    ``njets`` jets. Stops at the first failing position.
    """
    for j in range(njets):
        jet = jets[j]
        if jet.pt < ptmin[j] or abs(jet.eta) > etamax[j]:
            return False
    return True


def select_delta_r(jets, njets, drmin):
    """Require dR >= drmin for every pair of the leading ``njets`` jets."""
    if njets < 2:
        raise ValueError(f"dR selection needs at least two jets, got njets={njets}")
    for j1 in range(njets - 1):
        for j2 in range(j1 + 1, njets):
            if jets[j1].delta_r(jets[j2]) < drmin:
                return False
    return True


def select_delta_eta(jets, njets, detamax):
    """Require |eta1 - eta2| <= detamax for the two leading jets."""
    if njets < 2:
        raise ValueError(f"deta selection needs at least two jets, got njets={njets}")
    return abs(jets[0].eta - jets[1].eta) <= detamax


def btag_score(jet, use_summed=False, discriminators=DEFAULT_DISCRIMINATORS):
    if use_summed:
        return jet.btag(discriminators[0]) + jet.btag(discriminators[1])
    return jet.btag()


def select_btag(jets, njets, btagmin, nonbtag=None, use_summed=False,
                discriminators=DEFAULT_DISCRIMINATORS):
    """
    b-tag requirement on the leading ``njets`` jets.

    All but the last position need score >= btagmin[j]. The last one
    needs score >= btagmin[-1] when ``nonbtag`` is None, otherwise
    score <= nonbtag.
    """
    for j in range(njets):
        score = btag_score(jets[j], use_summed, discriminators)
        if j < njets - 1 or nonbtag is None:
            if score < btagmin[j]:
                return False
        elif score > nonbtag:
            return False
    return True


def count_matched_prefix(jets, n_checked, labels):
    """
    Number of leading trigger labels matched by the leading jets.

    For each of the first ``n_checked`` jets, labels are tested in order
    and the first unmatched one ends the count for that jet. The result
    is the smallest count over the checked jets.
    """
    if n_checked > len(jets):
        raise ValueError(f"cannot check {n_checked} jets, event has {len(jets)}")
    n_matched = len(labels)
    for jet in jets[:n_checked]:
        n = 0
        for label in labels:
            if not jet.matched(label):
                break
            n += 1
        n_matched = min(n_matched, n)
    return n_matched


# Cascade

class Stage:
    """A named cut: ``predicate(event)`` returns True if the event passes."""

    def __init__(self, key, name, predicate):
        self.key = key
        self.name = name
        self.predicate = predicate

    def __repr__(self):
        return f"Stage({self.key!r}, {self.name!r})"


class SelectionCascade:
    """
    Ordered cuts evaluated with early exit.

    Parameters
    ----------
    stages : list of Stage
        Cuts in evaluation order.
    checkpoints : dict, optional
        Stage key -> callable(event), invoked right after that stage
        passes.
    """

    def __init__(self, stages, checkpoints=None):
        self.stages = list(stages)
        keys = [stage.key for stage in self.stages]
        if len(set(keys)) != len(keys):
            raise ValueError(f"duplicate stage keys in {keys}")
        self.checkpoints = dict(checkpoints or {})
        for key in self.checkpoints:
            if key not in keys:
                raise KeyError(f"checkpoint for unknown stage '{key}'")

    @property
    def stage_names(self):
        return [stage.name for stage in self.stages]

    def run(self, event, cutflow):
        """
        Evaluate all stages on ``event``, recording each outcome.

        Returns the index of the first failing stage, or None if the
        event passed every stage.
        """
        for i, stage in enumerate(self.stages):
            if cutflow.record_stage(not stage.predicate(event)):
                return i
            checkpoint = self.checkpoints.get(stage.key)
            if checkpoint is not None:
                checkpoint(event)
        return None


def event_stages(trigger_path):
    """
    Event-level stages: good-run list and trigger decision.

    The event needs ``good_run()`` and ``trigger_result(path)``.
    """
    return [
        Stage("json", "JSON", lambda event: event.good_run()),
        Stage("trigger", "Triggered", lambda event: event.trigger_result(trigger_path)),
    ]


def jet_stages(params, match_tracker=None):
    """
    Jet stages operating on ``event.selected_jets``.

    The online-match stage calls ``event.match(jets, labels, radius)``
    and feeds the matched-label count to ``match_tracker``.
    """
    word = JET_COUNT_WORDS[params.njets]
    btag_label = "b" * (params.njets - 1) + ("b" if params.isbbbb else "nb")
    matched_label = ";".join(f"j{i + 1}" for i in range(params.matched_jets))

    def online_match(event):
        jets = event.selected_jets
        event.match(jets[:params.matched_jets], params.trigger_objects, params.match_delta_r)
        n = count_matched_prefix(jets, params.matched_jets, params.trigger_objects)
        if match_tracker is not None:
            return not match_tracker.record(n)
        return n == len(params.trigger_objects)

    return [
        Stage("multiplicity", f"{word} idloose-jet",
              lambda event: select_multiplicity(event.selected_jets, params.njets)),
        Stage("kinematics", f"{word} jet kinematics",
              lambda event: select_kinematic(event.selected_jets, params.njets,
                                             params.ptmin, params.etamax)),
        Stage("delta_r", "Delta R(i;j)",
              lambda event: select_delta_r(event.selected_jets, params.njets, params.drmin)),
        Stage("delta_eta", "Delta eta(j1;j2)",
              lambda event: select_delta_eta(event.selected_jets, params.njets, params.detamax)),
        Stage("btag", f"btagged ({btag_label})",
              lambda event: select_btag(event.selected_jets, params.njets, params.btagmin,
                                        params.nonbtag, params.use_summed_discriminator,
                                        params.discriminators)),
        Stage("online_match", f"Matched to online {matched_label}", online_match),
    ]


def build_cascade(params, trigger_path, match_tracker=None, checkpoints=None):
    """Full analysis cascade: event-level stages followed by jet stages."""
    return SelectionCascade(
        event_stages(trigger_path) + jet_stages(params, match_tracker),
        checkpoints=checkpoints,
    )
