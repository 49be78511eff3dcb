#!/usr/bin/env python
from tqdm.auto import tqdm
import os, argparse, math, yaml, logging
import pandas as pd
from pathlib import Path


def parse_args(argv=None):
    p = argparse.ArgumentParser()
    p.add_argument(
        "-b",
        "--cpu",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Run on CPU (default); pass --no-cpu to use the GPU.",
    )
    p.add_argument(
        "-c",
        "--config",
        type=str,
        default="experiment.yaml",
        help="Path to the YAML configuration file.",
    )
    p.add_argument(
        "-s",
        "--stem",
        type=str,
        default="agreement",
        help="Base name (stem) for the output CSV/PDF saved to the results/ directory.",
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log estimator fits at INFO level.",
    )
    return p.parse_args(argv)


def main(args):
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    if args.cpu:
        os.environ["JAX_PLATFORM_NAME"] = "cpu"

        # Tell XLA/Eigen to multi-thread on CPU
        os.environ["XLA_FLAGS"] = "--xla_cpu_multi_thread_eigen=true intrasession=true"

    import jax, jax.numpy as jnp
    import numpy as np
    from kernel_expfam.config import EstimatorConfig, build_estimator
    from kernel_expfam.util import sample_gaussian_mixture, agreement, make_agreement_plot

    jax.config.update("jax_enable_x64", True)

    for device in jax.devices():
        print(device)

    # Load config file
    with open(args.config) as f:
        cfg = yaml.safe_load(f)

    # Static constants from config
    REPLICATES = cfg["replicates"]  # number of synthetic datasets
    NUM_SAMPLES = int(cfg["num_samples"])  # n
    NUM_TEST = int(cfg["num_test"])  # held-out points per replicate
    MEANS = jnp.array(cfg["means"], dtype=float)  # mixture means, shape (k, d)
    SCALE = float(cfg["scale"])  # mixture component std
    SIGMAS = [math.exp(x) for x in map(float, cfg["ln_sigmas"])]
    LMBDAS = [math.exp(x) for x in map(float, cfg["ln_lmbdas"])]
    NUM_BASIS = list(cfg["num_basis"])  # Nystrom basis sizes looped over
    BASIS_SEED = int(cfg["basis_seed"])  # seed of the random Nystrom basis

    # -------------- Define an experiment over one replicate ------------

    def process_one_rep(rep):
        rep_key = jax.random.key(rep)
        data_key, test_key = jax.random.split(rep_key, 2)

        data = sample_gaussian_mixture(data_key, NUM_SAMPLES, MEANS, SCALE)
        X_test = sample_gaussian_mixture(test_key, NUM_TEST, MEANS, SCALE)

        rows = []

        sigma_pbar = tqdm(SIGMAS, position=1, leave=False)
        for sigma in sigma_pbar:
            sigma_pbar.set_description(f"Sigma = {sigma:.3f}")

            for lmbda in tqdm(LMBDAS, position=2, leave=False, desc="Lambda"):
                full_cfg = EstimatorConfig("Full", sigma, lmbda)
                full = build_estimator(data, full_cfg).fit()

                for m in tqdm(NUM_BASIS, position=3, leave=False, desc="Basis size"):
                    nystrom_cfg = EstimatorConfig(
                        "Nystrom", sigma, lmbda, num_basis=m, seed=BASIS_SEED + rep
                    )
                    nystrom = build_estimator(data, nystrom_cfg).fit()

                    err = agreement(full, nystrom, X_test)
                    rows.append(
                        {
                            "replicate": rep,
                            "ln_sigma": round(math.log(sigma), 3),
                            "ln_lmbda": round(math.log(lmbda), 3),
                            "num_basis": m,
                            "agreement": err,
                            "log_agreement": float(np.log10(err + 1e-300)),
                        }
                    )

        return rows

    # --------------- Perform Full vs. Nystrom comparisons -----------------

    results = []
    for rep in tqdm(range(REPLICATES), desc="Replicates"):
        results.extend(process_one_rep(rep))

    # --------------- Save output -----------------

    stem = args.stem
    outdir = Path("results")
    outdir.mkdir(exist_ok=True)
    result_df = pd.DataFrame(results)
    result_df.to_csv(outdir / f"{stem}.csv", index=False)
    print(f"Saved results/{stem}.csv")

    fig, _ = make_agreement_plot(result_df)
    fig.savefig(outdir / f"{stem}.pdf")
    print(f"Saved results/{stem}.pdf")


if __name__ == "__main__":
    main(parse_args())
