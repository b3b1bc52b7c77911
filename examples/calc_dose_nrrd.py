"""
Helical Delivery Dose Calculation - Command Line Workflow

This example runs the complete calculation outside the archive parser:
1. Load the planning CT from NRRD and its density calibration from CSV
2. Load the delivery plan description (YAML/JSON) and its leaf sinogram
3. Find the dose engine (local gpusadose/sadose, or remote via config.txt)
4. Stage inputs, run the engine and write the dose as NRRD

Usage:
    python examples/calc_dose_nrrd.py --check
    python examples/calc_dose_nrrd.py --image ct.nrrd --ivdt ivdt.csv \
        --plan plan.yaml --model-folder ./GPU --out dose.nrrd
"""

import argparse
import logging
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from TomoDose import (
    DensityCalibration,
    DoseJobOrchestrator,
    DoseJobRequest,
    DoseOptions,
    EngineContext,
    EngineGateway,
    ImageVolume,
    check_engine,
    load_engine_config,
    load_plan_record,
)
from TomoDose.errors import TomoDoseError


def main(argv=None):
    ap = argparse.ArgumentParser(description="Calculate helical delivery dose on an NRRD image")
    ap.add_argument("--config", default="config.txt", help="Remote engine settings (config.txt, YAML or JSON)")
    ap.add_argument("--check", action="store_true", help="Only report whether a dose engine is available")
    ap.add_argument("--image", help="Planning CT (NRRD)")
    ap.add_argument("--ivdt", help="Density calibration CSV with columns CT, Density")
    ap.add_argument("--plan", help="Delivery plan description (YAML/JSON)")
    ap.add_argument("--out", default="dose.nrrd")
    ap.add_argument("--model-folder", default="./GPU")
    ap.add_argument("--downsample", type=int, default=0, help="0 selects automatically")
    ap.add_argument("--azimuths", type=int, default=4)
    ap.add_argument("--raysteps", type=int, default=1)
    ap.add_argument("--supersample", action="store_true")
    ap.add_argument("--sadose", action="store_true", help="Use the CPU engine instead of gpusadose")
    ap.add_argument("--big-endian-sinogram", action="store_true")
    ap.add_argument("--verbose", "-v", action="store_true")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    context = EngineContext(EngineGateway(load_engine_config(args.config)))

    if args.check:
        available = check_engine(context)
        print("Dose engine available" if available else "No dose engine available")
        context.reset()
        return 0 if available else 1

    if not (args.image and args.ivdt and args.plan):
        ap.error("--image, --ivdt and --plan are required")

    options = DoseOptions(
        downsample=args.downsample,
        azimuths=args.azimuths,
        ray_steps=args.raysteps,
        super_sample=args.supersample,
        use_secondary_engine=args.sadose,
        model_folder=args.model_folder,
    )

    try:
        image = ImageVolume.from_nrrd(args.image, DensityCalibration.from_csv(args.ivdt))
        plan = load_plan_record(args.plan)
        request = DoseJobRequest.from_plan(
            plan, image=image, options=options,
            byteorder=">" if args.big_endian_sinogram else "<",
        )
        dose = DoseJobOrchestrator(context).calculate(request)
    except TomoDoseError as err:
        print(f"Dose calculation failed: {err}", file=sys.stderr)
        return 1
    finally:
        context.reset()

    dose.write_nrrd(args.out)
    print(f"Saved dose: {args.out} (max {dose.max_dose:.3f})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
