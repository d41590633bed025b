"""
cli.py
~~~~~~

Command-line driver: load data, train, evaluate, export and serve.

Examples:
    digitnet train data/mnist_train.csv --test-csv data/mnist_test.csv \\
        --sizes 784,100,50,10 --epochs 20 --batch-size 10 \\
        --learning-rate 0.3 --output model.json
    digitnet evaluate model.json data/mnist_test.csv
    digitnet predict model.json data/mnist_test.csv
    digitnet serve --port 8000

Every command exits with status 1 when the engine or the loader reports an
error, and 0 on success.
"""

import functools
import json
import sys
from typing import Any, Callable

import click
import numpy as np

from digitnet import __version__
from digitnet.config import Settings, parse_sizes
from digitnet.data_loader import load_csv, load_data_wrapper
from digitnet.evaluator import evaluate
from digitnet.exceptions import DigitNetError
from digitnet.log_config import configure_logging
from digitnet.model_codec import load_model, save_model
from digitnet.network import construct
from digitnet.predictor import classify
from digitnet.trainer import GRADIENT_POLICIES, TrainingConfig, train


def reports_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Turn engine errors into a message on stderr and exit status 1."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except (DigitNetError, OSError) as e:
            click.echo(f"Error: {type(e).__name__}: {e}", err=True)
            sys.exit(1)

    return wrapper


@click.group()
@click.version_option(__version__, prog_name="digitnet")
def cli() -> None:
    """digitnet - handwritten digit recognition with a from-scratch network"""
    configure_logging(Settings.from_env())


@cli.command("train")
@click.argument("train_csv", type=click.Path(dir_okay=False))
@click.option("--test-csv", type=click.Path(dir_okay=False),
              help="Held-out set scored after every epoch")
@click.option("--sizes", default="784,100,50,10", show_default=True,
              help="Comma-separated layer widths, input first")
@click.option("--activation", default="sigmoid", show_default=True)
@click.option("--epochs", type=int, default=20, show_default=True)
@click.option("--batch-size", type=int, default=10, show_default=True)
@click.option("--learning-rate", type=float, default=0.3, show_default=True)
@click.option("--seed", type=int, default=None,
              help="Seed for initialisation and shuffling")
@click.option("--no-shuffle", is_flag=True,
              help="Keep the file order in every epoch")
@click.option("--gradient-policy", type=click.Choice(GRADIENT_POLICIES),
              default="sum", show_default=True)
@click.option("--workers", type=int, default=1, show_default=True,
              help="Threads computing per-sample gradients")
@click.option("--num-classes", type=int, default=10, show_default=True)
@click.option("--output", "-o", type=click.Path(dir_okay=False),
              default="model.json", show_default=True,
              help="Where to write the model snapshot")
@reports_errors
def train_command(
    train_csv: str,
    test_csv: str,
    sizes: str,
    activation: str,
    epochs: int,
    batch_size: int,
    learning_rate: float,
    seed: int,
    no_shuffle: bool,
    gradient_policy: str,
    workers: int,
    num_classes: int,
    output: str
) -> None:
    """Train a network on TRAIN_CSV and write its snapshot."""
    architecture = parse_sizes(sizes)
    training_data, test_data = load_data_wrapper(
        train_csv, test_csv, num_classes=num_classes
    )

    network = construct(architecture, activation=activation,
                        rng=np.random.default_rng(seed))
    config = TrainingConfig(
        epochs=epochs,
        mini_batch_size=batch_size,
        learning_rate=learning_rate,
        shuffle=not no_shuffle,
        seed=seed,
        evaluation_data=test_data,
        gradient_policy=gradient_policy,
        workers=workers
    )
    train(network, training_data, config)

    if test_data:
        result = evaluate(network, test_data)
        click.echo(f"Correct: {result.correct}")
        click.echo(f"Incorrect: {result.incorrect}")
        click.echo(f"Accuracy: {result.accuracy:.2%}")

    save_model(network, output)
    click.echo(f"Saved model to {output}")


@cli.command("evaluate")
@click.argument("model", type=click.Path(dir_okay=False))
@click.argument("data_csv", type=click.Path(dir_okay=False))
@click.option("--format", "output_format", type=click.Choice(["text", "json"]),
              default="text", show_default=True)
@reports_errors
def evaluate_command(model: str, data_csv: str, output_format: str) -> None:
    """Score the snapshot MODEL against the labelled DATA_CSV."""
    network = load_model(model)
    samples = load_csv(data_csv, num_classes=network.num_classes,
                       input_size=network.input_size)
    result = evaluate(network, samples)

    if output_format == "json":
        click.echo(json.dumps(result.to_dict()))
    else:
        click.echo(f"Correct: {result.correct}")
        click.echo(f"Incorrect: {result.incorrect}")
        click.echo(f"Accuracy: {result.accuracy:.2%}")


@cli.command("predict")
@click.argument("model", type=click.Path(dir_okay=False))
@click.argument("data_csv", type=click.Path(dir_okay=False))
@reports_errors
def predict_command(model: str, data_csv: str) -> None:
    """Print the predicted class of every row of DATA_CSV, one per line."""
    network = load_model(model)
    samples = load_csv(data_csv, num_classes=network.num_classes,
                       input_size=network.input_size)
    for digit in classify(network, [x for x, _ in samples]):
        click.echo(str(digit))


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", type=int, default=None,
              help="Defaults to $PORT or 8000")
def serve(host: str, port: int) -> None:
    """Run the HTTP/WebSocket API server."""
    from digitnet.api_server import run_server

    run_server(host=host, port=port)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
