"""
Main entry point for the multi-jet b-tag selection.

Reads MssmHbb ntuples, applies the JSON, trigger and jet selection
cascade to every event, keeps a cut flow of the surviving events and
of the online trigger-object matching, and fills jet histograms before
and after the selection.

Supports both serial execution and local multi-process parallelism
via a Dask LocalCluster.
"""

import argparse
import glob
import os
import time
import multiprocessing

import yaml

from jetsel.analysis.cutflow import CutFlowTracker, MatchCountTracker
from jetsel.analysis.histograms import HistogramSet
from jetsel.analysis.io import GoodRunList, load_events
from jetsel.analysis.selection import SelectionParameters, build_cascade
from jetsel.distributed.executor import create_local_client, gather_results, map_files


PROGRESS_EVERY = 100000


# Argument parsing and config loading
def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Multi-jet b-tag selection with cut-flow accounting."
    )
    parser.add_argument(
        "--config",
        default="config/config.yaml",
        help="Path to YAML configuration file.",
    )
    parser.add_argument(
        "--n-workers",
        type=int,
        default=None,
        help="Number of worker processes for parallel file processing "
             "(overrides the config, default 1).",
    )
    parser.add_argument(
        "--output",
        default=None,
        help="Output ROOT file for histograms (overrides the config).",
    )
    return parser.parse_args(argv)


def resolve_n_workers(args, config):
    # Command line wins over the config file
    if args.n_workers is not None:
        return args.n_workers
    return int(config.get("n_workers", 1))


def load_config(path):
    with open(path) as f:
        return yaml.safe_load(f) or {}


def find_input_files(config):
    """
    Input ntuples, either listed one per line in ``input_list`` or
    matched by ``data_dir``/``file_pattern``.
    """
    if config.get("input_list"):
        with open(config["input_list"]) as f:
            return [line.strip() for line in f
                    if line.strip() and not line.lstrip().startswith("#")]
    pattern = os.path.join(config.get("data_dir", "."), config.get("file_pattern", "*.root"))
    return sorted(glob.glob(pattern))


# Per-file analysis
def process_events(source, cascade, cutflow, histograms):
    """
    Run the selection cascade over every event of ``source``.

    Returns the number of events that passed all cuts.
    """
    n_selected = 0
    for i in range(len(source)):
        if i > 0 and i % PROGRESS_EVERY == 0:
            print(f"[INFO] {i} events processed!")
        event = source.event(i)
        cutflow.next_event()
        histograms.count_event()
        if cascade.run(event, cutflow) is None:
            n_selected += 1
    return n_selected


def process_file(filename, config):
    """
    Per-file multi-jet analysis.

    Steps:
      1. Load jets, trigger results, run/lumi and trigger objects.
      2. For each event: JSON, trigger, loose-ID jet multiplicity.
      3. Fill pre-selection histograms.
      4. Kinematics, dR, deta and b-tag cuts on the leading jets.
      5. Match the leading jets to the online trigger objects.
      6. Fill histograms of selected events.
    """
    params = SelectionParameters.from_config(config)
    good_runs = GoodRunList.from_json(config["json"]) if config.get("json") else None

    # 1) Load events
    source = load_events(filename, config, good_runs=good_runs)

    histograms = HistogramSet(params.njets)
    trigger_cutflow = MatchCountTracker(params.trigger_objects)

    # 2)-6) Selection cascade with histogram checkpoints
    cascade = build_cascade(
        params,
        config.get("trigger", {}).get("path"),
        match_tracker=trigger_cutflow,
        checkpoints={
            "multiplicity": lambda event: histograms.fill_preselection(event.selected_jets),
            "online_match": lambda event: histograms.fill_selected(event.selected_jets),
        },
    )
    cutflow = CutFlowTracker(cascade.stage_names)

    print(f"[INFO] {filename}: this analysis has {len(source)} events.")
    n_selected = process_events(source, cascade, cutflow, histograms)

    info = {
        "filename": filename,
        "n_events": len(source),
        "n_selected": n_selected,
        "cutflow": cutflow,
        "trigger_cutflow": trigger_cutflow,
    }
    return histograms, info


def safe_process_file(fname, config):
    """
    Wrapper so that a bad file doesn't kill the whole job.
    """
    try:
        return process_file(fname, config)
    except Exception as e:
        print(f"[WARN] Error in file {fname}: {e}")
        return None


def merge_results(results):
    """
    Add up histograms and cut flows of the per-file results.

    Returns (histograms, cutflow, trigger_cutflow, n_events).
    """
    histograms, info = results[0]
    cutflow = info["cutflow"]
    trigger_cutflow = info["trigger_cutflow"]
    n_events = info["n_events"]
    for h, other in results[1:]:
        histograms += h
        cutflow += other["cutflow"]
        trigger_cutflow += other["trigger_cutflow"]
        n_events += other["n_events"]
    return histograms, cutflow, trigger_cutflow, n_events


def print_configuration(params, config, files):
    for line in params.describe():
        print(line)
    print(f"Input files: {len(files)}")
    print(f"Output file is {config.get('output', 'histograms.root')}")
    if config.get("json"):
        print(f"JSON file is {config['json']}")
    else:
        print("Running without JSON file.")
    print(f"triggerPath={config.get('trigger', {}).get('path')}")


def main(argv=None):
    args = parse_args(argv)
    config = load_config(args.config)
    if args.output:
        config["output"] = args.output
    output = config.setdefault("output", "histograms.root")

    # Fail on invalid cuts before touching any input
    params = SelectionParameters.from_config(config)

    files = find_input_files(config)
    if not files:
        raise RuntimeError("No input files found")
    if config.get("json") and not os.path.isfile(config["json"]):
        raise RuntimeError(f"Can not open json file: {config['json']}")

    print_configuration(params, config, files)

    # Decide how many workers to use
    n_workers = resolve_n_workers(args, config)
    max_procs = multiprocessing.cpu_count() or 1
    if n_workers > max_procs:
        print(
            f"[INFO] Requested {n_workers} workers but only {max_procs} cores available; "
            f"using {max_procs}."
        )
        n_workers = max_procs

    print(f"Using {n_workers} worker process(es).")

    start_time = time.perf_counter()

    results = []
    # Serial path for N=1: no cluster start-up
    if n_workers == 1:
        for i, fname in enumerate(files, start=1):
            out = safe_process_file(fname, config)
            if out is not None:
                results.append(out)
            print(f"[{i}/{len(files)}] Completed {fname}")
    else:
        client = create_local_client(n_workers=n_workers)
        try:
            tasks = map_files(client, files, safe_process_file, config)
            for fname, out in zip(files, gather_results(client, tasks)):
                if out is None:
                    print(f"[ERROR] {fname}: no result")
                    continue
                results.append(out)
        finally:
            client.close()

    wall_time = time.perf_counter() - start_time

    if not results:
        raise RuntimeError("No successful per-file results; nothing to merge.")

    histograms, cutflow, trigger_cutflow, n_events = merge_results(results)

    # Print statistics
    print()
    print(f"Analysis took {cutflow.elapsed_ms()} ms.")

    outdir = os.path.dirname(output)
    if outdir:
        os.makedirs(outdir, exist_ok=True)
    histograms.write(output)

    if config.get("analysis", {}).get("make_plots", False):
        histograms.plot(config.get("output_dir", "plots"))

    print(cutflow)
    print()
    print(trigger_cutflow)

    # Efficiency
    print()
    print(f"Efficiency: {cutflow.efficiency():g}")

    print(f"Processed {len(results)} files, {n_events} events.")
    print(f"Total wall time: {wall_time:.2f} s")
    if wall_time > 0:
        print(f"Average processing rate: {n_events / wall_time:.1f} events/s")
    print(f"Saved histograms to {output}")


if __name__ == "__main__":
    main()
