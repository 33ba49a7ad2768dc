#!/usr/bin/env python3
"""Example: Convert a Materials Studio model into CASTEP seed files.

This example reads a ``.msi`` model, moves it, and writes the CASTEP seed
files plus a round-trip ``.msi`` copy via the castep_model API.
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import castep_model
from castep_model.config import load_config_from_file

HERE = os.path.dirname(__file__)
INPUT_FILE = os.path.join(HERE, "example_input", "sio2_fragment.msi")
OUTPUT_DIR = os.path.join(HERE, "example_output")


def example_convert_in_one_call():
    """Example 1: Geometry optimization seed in a single call."""
    print("=== Example 1: .msi to CASTEP seed ===")

    cfg = load_config_from_file("config.json")
    cfg.castep.cut_off_energy = 380.0

    paths = castep_model.convert_msi_to_seed(
        INPUT_FILE,
        output_dir=OUTPUT_DIR,
        seed_name="sio2",
        align_axis=(0, (1.0, 0.0, 0.0)),
        include_script=True,
        config=cfg,
    )
    for path in paths:
        print(f"  wrote {path}")


def example_step_by_step():
    """Example 2: Parse, edit and export with the lower-level functions."""
    print("\n=== Example 2: step-by-step ===")

    model = castep_model.read_msi(INPUT_FILE, policy="preserve")
    print(f"  {model!r}, elements {model.element_set()}")

    castep_model.center_at(model, (0.0, 0.0, 2.7))
    castep_model.rotate_degrees(model, axis=(0, 0, 1), angle=30.0)
    model.set_setting("xc_functional", "PBEsol")

    outputs = castep_model.export_model(model, "sio2_bs", task="BandStructure")
    print("  band-structure files:", ", ".join(outputs))
    castep_model.save_msi_file(model, os.path.join(OUTPUT_DIR, "sio2_edited.msi"))


if __name__ == "__main__":
    castep_model.configure_logging("INFO")
    os.makedirs(OUTPUT_DIR, exist_ok=True)
    example_convert_in_one_call()
    example_step_by_step()
