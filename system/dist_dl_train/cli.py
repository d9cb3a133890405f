import argparse
import os
import sys

from dist_dl_train.logging_utils import configure_logging


def main(argv=None):
    """Entry point for the CLI binary `dist-dl-train`."""
    parser = argparse.ArgumentParser(
        prog="dist-dl-train",
        description="Parameter averaging training and history utilities",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ERROR)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_train = sub.add_parser("train", help="Run parameter averaging rounds on a synthetic dataset")
    p_train.add_argument("--config", default="config.yaml", help="Path to YAML/JSON config (default: config.yaml)")
    p_train.add_argument("--rounds", type=int, default=None, help="Override training.num_rounds")
    p_train.add_argument("--history-db", default=None, help="Path to SQLite DB that records one row per round")
    p_train.add_argument("--checkpoint", default=None, help="Checkpoint file (load if exists, save on exit)")

    p_show = sub.add_parser("show-config", help="Print the network configuration as JSON")
    p_show.add_argument("--config", required=True, help="Path to YAML/JSON config")

    p_history = sub.add_parser("history", help="Print recorded training rounds")
    p_history.add_argument("--history-db", required=True, help="Path to SQLite DB written by `train`")
    p_history.add_argument("--name", default=None, help="History name (default: all names)")

    args = parser.parse_args(argv)

    # Initialize logging early
    configure_logging(args.log_level)

    if args.cmd == "train":
        from dist_dl_train.config import TrainingConfig, load_config
        from dist_dl_train.data.dataset import create_synthetic_dataset
        from dist_dl_train.models.conf import MultiLayerConfiguration
        from dist_dl_train.persistence.state_store import TrainingHistoryStore
        from dist_dl_train.sync.parameter_averaging import ParameterAveragingTrainer

        cfg = load_config(args.config)
        conf = MultiLayerConfiguration.from_dict(cfg.get('network', {}))
        training = TrainingConfig.from_dict(cfg.get('training'))

        dataset = create_synthetic_dataset(
            num_examples=training.num_examples,
            num_inputs=conf.layers[0].n_in,
            num_classes=conf.layers[-1].n_out,
            seed=training.seed,
        )

        store = TrainingHistoryStore(args.history_db) if args.history_db else None
        try:
            trainer = ParameterAveragingTrainer(conf, training, history_store=store)
            if args.checkpoint and os.path.exists(args.checkpoint):
                trainer.load(args.checkpoint)
                print(f"Resumed from {args.checkpoint} after {trainer.rounds_completed} rounds")

            scores = trainer.fit(dataset, args.rounds)
            for i, score in enumerate(scores):
                print(f"round {trainer.rounds_completed - len(scores) + i}: score={score:.6f}")
            print(f"best iteration score: {trainer.best_score:.6f}")

            if args.checkpoint:
                trainer.save(args.checkpoint)
        finally:
            if store is not None:
                store.close()
        return 0

    if args.cmd == "show-config":
        from dist_dl_train.config import load_config
        from dist_dl_train.models.conf import MultiLayerConfiguration

        cfg = load_config(args.config)
        conf = MultiLayerConfiguration.from_dict(cfg.get('network', {}))
        print(conf.to_json())
        return 0

    if args.cmd == "history":
        from dist_dl_train.persistence.state_store import TrainingHistoryStore

        with TrainingHistoryStore(args.history_db) as store:
            names = [args.name] if args.name else store.names()
            if not names:
                print("No history recorded")
                return 1
            for name in names:
                print(f"{name}:")
                versions = store.versions(name)
                if not versions:
                    print("  (none)")
                for version in versions:
                    payload = store.get(name, version) or {}
                    print(f"  - {version} | score={payload.get('score')} best={payload.get('best_score')} "
                          f"results={payload.get('num_results')}")
        return 0

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
