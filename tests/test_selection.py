import pytest
pytest.importorskip("vector")
from jetsel.analysis import selection
from jetsel.analysis.cutflow import CutFlowTracker, MatchCountTracker
from jetsel.analysis.physics import Jet, TriggerObject, match_trigger_objects


PTMIN = [100.0, 100.0, 40.0, 30.0]
ETAMAX = [2.2, 2.2, 2.2, 2.4]


class Untouchable:
    # Any attribute access means the position was evaluated
    def __getattr__(self, name):
        raise AssertionError(f"jet attribute '{name}' should not be read")


def _signal_jets(btag=0.9):
    return [
        Jet(150.0, 1.0, 0.0, 200.0, btag=btag),
        Jet(120.0, 1.5, 2.0, 250.0, btag=btag),
        Jet(50.0, 2.0, -2.0, 190.0, btag=btag),
        Jet(35.0, 2.3, 3.0, 180.0, btag=btag),
    ]


class FakeEvent:
    # Event interface used by the cascade stages

    def __init__(self, jets, good_run=True, fired=True, trigger_objects=None):
        self.selected_jets = selection.loose_jets(jets)
        self._good_run = good_run
        self._fired = fired
        self._trigger_objects = trigger_objects or {}

    def good_run(self):
        return self._good_run

    def trigger_result(self, path):
        return self._fired

    def match(self, jets, labels, delta_r_max):
        objects = {label: self._trigger_objects.get(label, []) for label in labels}
        match_trigger_objects(jets, objects, delta_r_max)


def _params(**kwargs):
    cfg = dict(
        njets=4,
        ptmin=PTMIN,
        etamax=ETAMAX,
        btagmin=[0.84, 0.84, 0.84, 0.46],
        drmin=1.0,
        detamax=1.55,
        trigger_objects=["L1", "HLT1"],
    )
    cfg.update(kwargs)
    return selection.SelectionParameters(**cfg)


# Object-level stages

def test_loose_jets_filters_and_orders_by_pt():
    jets = [
        Jet(30.0, 0.0, 0.0, 30.0),
        Jet(80.0, 0.0, 0.0, 80.0, id_loose=False),
        Jet(120.0, 0.0, 0.0, 120.0),
    ]

    selected = selection.loose_jets(jets)

    assert [jet.pt for jet in selected] == [120.0, 30.0]


def test_multiplicity():
    jets = _signal_jets()
    assert selection.select_multiplicity(jets, 4)
    assert not selection.select_multiplicity(jets[:3], 4)


def test_kinematic_selection_passes_reference_event():
    assert selection.select_kinematic(_signal_jets(), 4, PTMIN, ETAMAX)


def test_kinematic_selection_stops_at_first_failing_position():
    jets = [
        Jet(150.0, 1.0, 0.0, 200.0),
        Jet(90.0, 1.5, 2.0, 250.0),
        Untouchable(),
        Untouchable(),
    ]

    assert not selection.select_kinematic(jets, 4, PTMIN, ETAMAX)


def test_kinematic_selection_eta_bound_is_inclusive():
    jets = _signal_jets()
    jets[3] = Jet(35.0, -2.4, 3.0, 180.0)
    assert selection.select_kinematic(jets, 4, PTMIN, ETAMAX)

    jets[3] = Jet(35.0, -2.41, 3.0, 180.0)
    assert not selection.select_kinematic(jets, 4, PTMIN, ETAMAX)


def test_kinematic_selection_without_jets_is_vacuous():
    assert selection.select_kinematic([], 0, [], [])


def test_delta_r_selection():
    jets = _signal_jets()
    assert selection.select_delta_r(jets, 4, 1.0)

    # Third jet on top of the first one
    jets[2] = Jet(50.0, 1.1, 0.1, 190.0)
    assert not selection.select_delta_r(jets, 4, 1.0)
    # Only the two leading jets are considered
    assert selection.select_delta_r(jets, 2, 1.0)


def test_delta_eta_selection():
    jets = _signal_jets()
    assert selection.select_delta_eta(jets, 4, 0.5)
    assert not selection.select_delta_eta(jets, 4, 0.49)


@pytest.mark.parametrize("njets", [0, 1])
def test_pair_stages_need_two_jets(njets):
    jets = _signal_jets()
    with pytest.raises(ValueError):
        selection.select_delta_r(jets, njets, 1.0)
    with pytest.raises(ValueError):
        selection.select_delta_eta(jets, njets, 1.0)


def test_btag_selection_bbbb():
    jets = _signal_jets(btag=0.9)
    btagmin = [0.84, 0.84, 0.84, 0.46]
    assert selection.select_btag(jets, 4, btagmin)

    jets[3] = Jet(35.0, 2.3, 3.0, 180.0, btag=0.40)
    assert not selection.select_btag(jets, 4, btagmin)


@pytest.mark.parametrize("score, passes", [(0.5, False), (0.40, True)])
def test_btag_selection_nonbtag_on_last_jet(score, passes):
    jets = _signal_jets(btag=0.9)
    jets[3] = Jet(35.0, 2.3, 3.0, 180.0, btag=score)
    # btagmin of the last position is ignored in this mode
    btagmin = [0.84, 0.84, 0.84, 0.99]

    assert selection.select_btag(jets, 4, btagmin, nonbtag=0.46) is passes


def test_btag_selection_with_summed_discriminators():
    jets = [
        Jet(150.0, 0.0, 0.0, 150.0, btag=0.1,
            discriminators={"btag_deepb": 0.5, "btag_deepbb": 0.2}),
        Jet(120.0, 0.0, 2.0, 120.0, btag=0.1,
            discriminators={"btag_deepb": 0.3, "btag_deepbb": 0.1}),
    ]

    assert selection.btag_score(jets[0], use_summed=True) == pytest.approx(0.7)
    assert selection.select_btag(jets, 2, [0.6, 0.35], use_summed=True)
    assert not selection.select_btag(jets, 2, [0.6, 0.35])
    assert not selection.select_btag(jets, 2, [0.6, 0.45], use_summed=True)


def test_count_matched_prefix_stops_at_first_unmatched_label():
    labels = ["L1", "HLT1", "HLT2"]
    jet = Jet(150.0, 0.0, 0.0, 150.0)
    jet.add_match("L1")
    jet.add_match("HLT1")

    assert selection.count_matched_prefix([jet], 1, labels) == 2

    # A later label does not count once the prefix is broken
    other = Jet(120.0, 1.0, 2.0, 120.0)
    other.add_match("L1")
    other.add_match("HLT2")
    assert selection.count_matched_prefix([other], 1, labels) == 1


def test_count_matched_prefix_is_minimum_over_checked_jets():
    labels = ["L1", "HLT1", "HLT2"]
    jets = [Jet(150.0, 0.0, 0.0, 150.0), Jet(120.0, 1.0, 2.0, 120.0)]
    for label in labels:
        jets[0].add_match(label)
    jets[1].add_match("L1")

    assert selection.count_matched_prefix(jets, 2, labels) == 1
    assert selection.count_matched_prefix(jets, 1, labels) == 3
    assert selection.count_matched_prefix(jets, 0, labels) == 3

    with pytest.raises(ValueError):
        selection.count_matched_prefix(jets, 3, labels)


def test_matched_prefix_feeds_match_count_tracker():
    labels = ["L1", "HLT1", "HLT2"]
    jet = Jet(150.0, 0.0, 0.0, 150.0)
    jet.add_match("L1")
    jet.add_match("HLT1")
    tracker = MatchCountTracker(labels)

    failed = tracker.record(selection.count_matched_prefix([jet], 1, labels))

    assert failed is True
    assert tracker.counts == [1, 1, 0]


# Parameters

def test_parameters_from_config_defaults():
    params = selection.SelectionParameters.from_config({"selection": {"njets": 3}})

    assert params.ptmin == (0.0, 0.0, 0.0)
    assert params.etamax == (1.0, 1.0, 1.0)
    assert params.btagmin == (0.0, 0.0, 0.0)
    assert params.drmin == 1.0
    assert params.detamax == 6.3
    assert params.isbbbb
    assert params.trigger_objects == ()
    assert params.matched_jets == 2


def test_parameters_from_config_control_region():
    config = {
        "selection": {
            "njets": 2,
            "ptmin": [100, 100],
            "etamax": [2.2, 2.2],
            "btagmin": [0.84, 0.84],
            "nonbtag": 0.46,
            "deepb": True,
        },
        "trigger": {"objects": ["a/L1", "a/HLT"], "matched_jets": 1},
    }

    params = selection.SelectionParameters.from_config(config)

    assert not params.isbbbb
    assert params.nonbtag == 0.46
    assert params.use_summed_discriminator
    assert params.trigger_objects == ("a/L1", "a/HLT")
    assert params.matched_jets == 1


@pytest.mark.parametrize(
    "kwargs",
    [
        {"njets": 1, "ptmin": [0], "etamax": [1], "btagmin": [0]},
        {"njets": 5, "ptmin": [0] * 5, "etamax": [1] * 5, "btagmin": [0] * 5},
        {"ptmin": [100.0, 100.0, 40.0]},
        {"ptmin": [100.0, -1.0, 40.0, 30.0]},
        {"btagmin": [0.84, 0.84, 1.2, 0.46]},
        {"nonbtag": 1.5},
        {"drmin": -0.1},
        {"detamax": -1.0},
        {"matched_jets": 5},
    ],
)
def test_parameters_validation(kwargs):
    with pytest.raises(ValueError):
        _params(**kwargs)


def test_parameters_describe():
    lines = _params(nonbtag=0.46).describe()

    assert lines[0] == "njets=4"
    assert "Using normal b-tagging." in lines
    assert "ptmin=100 100 40 30" in lines
    assert "nonbtag=0.46" in lines
    assert "dRmin=1" in lines


# Cascade

def test_cascade_stage_names():
    cascade = selection.build_cascade(_params(), "HLT_path_v")
    assert cascade.stage_names == [
        "JSON",
        "Triggered",
        "Quad idloose-jet",
        "Quad jet kinematics",
        "Delta R(i;j)",
        "Delta eta(j1;j2)",
        "btagged (bbbb)",
        "Matched to online j1;j2",
    ]

    control = selection.build_cascade(_params(njets=3, ptmin=PTMIN[:3], etamax=ETAMAX[:3],
                                              btagmin=[0.84] * 3, nonbtag=0.46), "p")
    assert control.stage_names[2] == "Triple idloose-jet"
    assert control.stage_names[6] == "btagged (bbnb)"


def _objects_on(jets, labels):
    return {label: [TriggerObject(j.pt, j.eta, j.phi) for j in jets] for label in labels}


def test_cascade_full_survival_fills_both_checkpoints():
    params = _params()
    jets = _signal_jets()
    match_tracker = MatchCountTracker(params.trigger_objects)
    calls = []
    cascade = selection.build_cascade(
        params,
        "HLT_path_v",
        match_tracker=match_tracker,
        checkpoints={
            "multiplicity": lambda event: calls.append("pre"),
            "online_match": lambda event: calls.append("post"),
        },
    )
    cutflow = CutFlowTracker(cascade.stage_names)
    event = FakeEvent(jets, trigger_objects=_objects_on(jets[:2], params.trigger_objects))

    cutflow.next_event()
    failed_at = cascade.run(event, cutflow)

    assert failed_at is None
    assert calls == ["pre", "post"]
    assert cutflow.counts == [1] * 8
    assert match_tracker.counts == [1, 1]


def test_cascade_stops_at_first_failing_stage():
    params = _params()
    calls = []
    cascade = selection.build_cascade(
        params, "HLT_path_v",
        checkpoints={"multiplicity": lambda event: calls.append("pre")},
    )
    cutflow = CutFlowTracker(cascade.stage_names)

    # Not triggered
    cutflow.next_event()
    assert cascade.run(FakeEvent(_signal_jets(), fired=False), cutflow) == 1
    assert calls == []

    # Kinematics fail after the pre-selection checkpoint
    jets = _signal_jets()
    jets[1] = Jet(90.0, 1.5, 2.0, 250.0)
    cutflow.next_event()
    assert cascade.run(FakeEvent(jets), cutflow) == 3
    assert calls == ["pre"]

    assert cutflow.counts == [2, 1, 1, 0, 0, 0, 0, 0]


def test_cascade_online_match_failure_is_counted_per_label():
    params = _params()
    jets = _signal_jets()
    match_tracker = MatchCountTracker(params.trigger_objects)
    cascade = selection.build_cascade(params, "p", match_tracker=match_tracker)
    cutflow = CutFlowTracker(cascade.stage_names)
    # HLT1 object only near the leading jet
    objects = {
        "L1": [TriggerObject(j.pt, j.eta, j.phi) for j in jets[:2]],
        "HLT1": [TriggerObject(jets[0].pt, jets[0].eta, jets[0].phi)],
    }

    cutflow.next_event()
    assert cascade.run(FakeEvent(jets, trigger_objects=objects), cutflow) == 7
    assert match_tracker.counts == [1, 0]
    assert cutflow.counts[-2:] == [1, 0]


def test_cascade_rejects_unknown_checkpoint():
    with pytest.raises(KeyError):
        selection.build_cascade(_params(), "p", checkpoints={"mass_window": print})


def test_cascade_rejects_duplicate_stage_keys():
    stage = selection.Stage("a", "A", lambda event: True)
    with pytest.raises(ValueError):
        selection.SelectionCascade([stage, stage])
