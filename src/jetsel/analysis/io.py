"""
I/O utilities for reading MssmHbb ntuples with uproot.

The jet, trigger-results, event-info and trigger-object trees of one
file are read into Awkward Arrays and served event by event.
"""

import json

import numpy as np
import uproot
import awkward as ak

from jetsel.analysis.physics import Jet, TriggerObject, match_trigger_objects
from jetsel.analysis.selection import loose_jets


DEFAULT_TREES = {
    "jets": "MssmHbb/Events/slimmedJetsPuppiReapplyJEC",
    "trigger_results": "MssmHbb/Events/TriggerResults",
    "event_info": "MssmHbb/Events/EventInfo",
}

DEFAULT_JET_BRANCHES = {
    "pt": "pt",
    "eta": "eta",
    "phi": "phi",
    "energy": "e",
    "id_loose": "id_loose",
    "btag": "btag_csvivf",
}

DEFAULT_EVENT_BRANCHES = {
    "run": "run",
    "lumi": "lumisection",
}

TRIGGER_OBJECT_BRANCHES = ["pt", "eta", "phi", "e"]


def _find_tree(file, path):
    """
    Locate a TTree inside the ROOT file.

    Logic:
    1. If ``path`` exists as given (cycle optional), use it.
    2. Otherwise, search all directories for exactly one TTree with the
       same name as the last component of ``path``.
    """
    try:
        obj = file[path]
        if obj.classname == "TTree":
            return obj
    except KeyError:
        pass

    name = path.rsplit("/", 1)[-1]
    matches = [
        key for key, cls in file.classnames().items()
        if cls == "TTree" and key.split(";")[0].rsplit("/", 1)[-1] == name
    ]
    if len(matches) == 1:
        return file[matches[0]]

    raise RuntimeError(f"No TTree '{path}' found in file {file.file_path}")


class GoodRunList:
    """
    Certified luminosity sections.

    Built from the CMS JSON format: {"run": [[first, last], ...], ...}
    with inclusive lumi-section ranges.
    """

    def __init__(self, ranges):
        self.ranges = {
            int(run): [(int(first), int(last)) for first, last in lumis]
            for run, lumis in ranges.items()
        }

    @classmethod
    def from_json(cls, path):
        with open(path) as f:
            return cls(json.load(f))

    def contains(self, run, lumi):
        for first, last in self.ranges.get(int(run), ()):
            if first <= lumi <= last:
                return True
        return False

    def __contains__(self, run_lumi):
        return self.contains(*run_lumi)


class Event:
    """One event of an EventSource."""

    def __init__(self, source, index):
        self.source = source
        self.index = index
        jets = [Jet.from_record(rec, source.jet_branches) for rec in source.jets[index]]
        jets.sort(key=lambda jet: jet.pt, reverse=True)
        self.jets = jets
        self.selected_jets = loose_jets(jets)

    def good_run(self):
        if self.source.good_runs is None:
            return True
        run_lumi = (self.source.runs[self.index], self.source.lumis[self.index])
        return run_lumi in self.source.good_runs

    def trigger_result(self, path):
        if not path:
            return True
        return bool(self.source.triggers[path][self.index])

    def match(self, jets, labels, delta_r_max):
        """Mark ``jets`` matched to the trigger objects of ``labels``."""
        objects = {
            label: [
                TriggerObject(rec["pt"], rec["eta"], rec["phi"], rec.get("e", 0.0))
                for rec in self.source.trigger_objects[label][self.index]
            ]
            for label in labels
        }
        match_trigger_objects(jets, objects, delta_r_max)


class EventSource:
    """
    Per-event access to the collections of one file.

    Parameters
    ----------
    jets : list
        Per event, a list of jet records (dicts keyed by branch name).
    triggers : dict, optional
        Trigger path -> per-event boolean array.
    runs, lumis : array-like, optional
        Run and luminosity-section number per event.
    trigger_objects : dict, optional
        Label -> per event, a list of trigger-object records.
    jet_branches : dict, optional
        Jet attribute -> branch name.
    good_runs : GoodRunList, optional
        Applied by ``Event.good_run``; None for simulation.
    """

    def __init__(self, jets, triggers=None, runs=None, lumis=None,
                 trigger_objects=None, jet_branches=None, good_runs=None):
        self.jets = jets
        self.triggers = triggers or {}
        self.runs = runs
        self.lumis = lumis
        self.trigger_objects = trigger_objects or {}
        self.jet_branches = jet_branches or DEFAULT_JET_BRANCHES
        self.good_runs = good_runs

    def __len__(self):
        return len(self.jets)

    def event(self, i):
        return Event(self, i)

    def __iter__(self):
        for i in range(len(self)):
            yield self.event(i)


def _read_trigger_results(tree, path, n_events):
    # "_v" at the end of an HLT path is a version prefix
    names = [name for name in tree.keys() if name.startswith(path)]
    if not names:
        raise RuntimeError(f"No trigger results branch matching '{path}'")
    arrays = tree.arrays(names, library="np")
    fired = np.zeros(n_events, dtype=bool)
    for name in names:
        fired |= arrays[name].astype(bool)
    return fired


def load_events(filename, config, good_runs=None):
    """
    Load the collections needed by the analysis from one ROOT file.

    Parameters
    ----------
    filename : str
        Path to the ntuple.
    config : dict
        Analysis configuration (``trees``, ``branches``, ``trigger``
        and ``selection`` sections are used).
    good_runs : GoodRunList, optional
        Certified lumi sections; None for simulation.

    Returns
    -------
    EventSource
    """
    trees = {**DEFAULT_TREES, **config.get("trees", {})}
    branch_cfg = config.get("branches", {})
    jet_branches = {**DEFAULT_JET_BRANCHES, **branch_cfg.get("jets", {})}
    event_branches = {**DEFAULT_EVENT_BRANCHES, **branch_cfg.get("event", {})}
    discriminators = list(config.get("selection", {}).get(
        "discriminators", ["btag_deepb", "btag_deepbb"]))
    trigger_cfg = config.get("trigger", {})
    trigger_path = trigger_cfg.get("path")
    labels = trigger_cfg.get("objects", [])

    with uproot.open(filename) as f:
        jet_tree = _find_tree(f, trees["jets"])
        available = set(jet_tree.keys())
        missing = [name for name in jet_branches.values() if name not in available]
        if missing:
            raise RuntimeError(
                f"Jet tree '{trees['jets']}' in {filename} has no branch {', '.join(missing)}"
            )
        # Discriminators are only read when the tree carries them
        names = list(jet_branches.values()) + [name for name in discriminators
                                               if name in available]
        raw = jet_tree.arrays(names, library="ak")
        jets = ak.to_list(ak.zip({name: raw[name] for name in names}))
        n_events = len(jets)

        triggers = {}
        if trigger_path:
            tree = _find_tree(f, trees["trigger_results"])
            triggers[trigger_path] = _read_trigger_results(tree, trigger_path, n_events)

        runs = lumis = None
        if good_runs is not None:
            tree = _find_tree(f, trees["event_info"])
            info = tree.arrays([event_branches["run"], event_branches["lumi"]], library="np")
            runs = info[event_branches["run"]]
            lumis = info[event_branches["lumi"]]

        trigger_objects = {}
        for label in labels:
            tree = _find_tree(f, label)
            fields = [b for b in TRIGGER_OBJECT_BRANCHES if b in set(tree.keys())]
            raw = tree.arrays(fields, library="ak")
            trigger_objects[label] = ak.to_list(ak.zip({b: raw[b] for b in fields}))

    return EventSource(
        jets,
        triggers=triggers,
        runs=runs,
        lumis=lumis,
        trigger_objects=trigger_objects,
        jet_branches=jet_branches,
        good_runs=good_runs,
    )
