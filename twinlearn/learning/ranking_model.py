"""Per-user learned response scorer.

Architectural role:
    Scores a candidate response embedding against one user's learned preference
    function and trains online from feedback. One instance per user, owned by
    `ModelRegistry`, which serializes training and scoring with a per-user
    read/write lock. This class itself is not thread-safe.

Architecture:
    `D -> hidden_units[0] -> ... -> 1`, ReLU between layers, sigmoid on the output
    logit. Training uses `BCEWithLogitsLoss` against labels in [0, 1] and Adam.

Cold start:
    The output layer is zero-initialized, so a fresh model scores exactly 0.5 for
    every input until the first training step.

Determinism:
    `score` runs in eval mode under `torch.no_grad()` and has no sampling, so it is
    deterministic for fixed weights and input. Batch training shuffles with a
    model-owned `torch.Generator`.
"""

import logging
import math
from typing import Iterable, Sequence

import numpy as np
import torch
import torch.nn as nn
import torch.optim as optim
from torch.utils.data import DataLoader, TensorDataset

from twinlearn.errors import InvalidInputError


logger = logging.getLogger(__name__)

DEFAULT_HIDDEN_UNITS = (128, 64)


class RankerNetwork(nn.Module):
    """Feed-forward network returning one preference logit per row."""

    def __init__(self, embedding_dim: int, hidden_units: Sequence[int]):
        super().__init__()
        layers = []
        width = embedding_dim
        for units in hidden_units:
            layers.append(nn.Linear(width, units))
            layers.append(nn.ReLU())
            width = units
        self.body = nn.Sequential(*layers)
        self.output = nn.Linear(width, 1)
        nn.init.zeros_(self.output.weight)
        nn.init.zeros_(self.output.bias)

    def forward(self, x):
        return self.output(self.body(x)).squeeze(-1)


def clamp_label(label) -> float:
    """Return `label` clamped to [0, 1].

    Raises:
        InvalidInputError: For non-numeric or non-finite labels.
    """
    try:
        value = float(label)
    except (TypeError, ValueError) as exc:
        raise InvalidInputError(f"label must be a number, got {label!r}") from exc
    if not math.isfinite(value):
        raise InvalidInputError("label must be finite")
    return min(1.0, max(0.0, value))


class RankingModel:
    """Shallow preference scorer with Adam optimizer state.

    Args:
        embedding_dim: Input width `D`.
        hidden_units: Hidden layer widths.
        learning_rate: Adam learning rate.
        seed: Optional seed for weight initialization and batch shuffling.
    """

    def __init__(
        self,
        embedding_dim: int = 384,
        hidden_units: Sequence[int] = DEFAULT_HIDDEN_UNITS,
        learning_rate: float = 0.001,
        seed: int | None = None,
    ) -> None:
        self.embedding_dim = int(embedding_dim)
        self.hidden_units = tuple(int(units) for units in hidden_units)
        self.learning_rate = float(learning_rate)
        self.train_steps = 0

        self._generator = torch.Generator()
        if seed is None:
            self._generator.seed()
        else:
            self._generator.manual_seed(seed)
            torch.manual_seed(seed)

        self.network = RankerNetwork(self.embedding_dim, self.hidden_units)
        self.network.eval()
        self.optimizer = optim.Adam(self.network.parameters(), lr=self.learning_rate)
        self.criterion = nn.BCEWithLogitsLoss()

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def score(self, embedding) -> float:
        """Return the predicted preference probability for one embedding."""
        return self.score_many([embedding])[0]

    def score_many(self, embeddings: Iterable) -> list[float]:
        """Score several embeddings in one forward pass, preserving order."""
        inputs = self._as_inputs(list(embeddings))
        if inputs.shape[0] == 0:
            return []
        with torch.no_grad():
            probabilities = torch.sigmoid(self.network(inputs))
        return [float(p) for p in probabilities.tolist()]

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train_one(self, embedding, label) -> float:
        """Apply one Adam step on a single `(embedding, label)` sample.

        Returns:
            Binary cross-entropy of the sample before the step.
        """
        inputs = self._as_inputs([embedding])
        target = torch.tensor([clamp_label(label)], dtype=torch.float32)
        return self._step(inputs, target)

    def train_batch(
        self,
        samples: Sequence[tuple],
        epochs: int = 10,
        batch_size: int = 32,
    ) -> float:
        """Train for `epochs` passes over `samples`, reshuffled every epoch.

        Args:
            samples: `(embedding, label)` pairs.
            epochs: Number of passes.
            batch_size: Mini-batch size.

        Returns:
            Mean loss over the final epoch.

        Raises:
            InvalidInputError: For an empty sample set or any invalid sample.
        """
        if not samples:
            raise InvalidInputError("no samples to train on")
        if epochs < 1 or batch_size < 1:
            raise InvalidInputError("epochs and batch_size must be >= 1")

        inputs = self._as_inputs([embedding for embedding, _ in samples])
        targets = torch.tensor(
            [clamp_label(label) for _, label in samples], dtype=torch.float32
        )
        loader = DataLoader(
            TensorDataset(inputs, targets),
            batch_size=batch_size,
            shuffle=True,
            generator=self._generator,
        )

        epoch_loss = 0.0
        for epoch in range(epochs):
            total = 0.0
            for batch_inputs, batch_targets in loader:
                total += self._step(batch_inputs, batch_targets) * batch_inputs.shape[0]
            epoch_loss = total / len(samples)
            logger.debug("Ranker epoch %d: loss = %.5f", epoch, epoch_loss)

        return epoch_loss

    def _step(self, inputs, targets) -> float:
        self.network.train()
        try:
            self.optimizer.zero_grad()
            loss = self.criterion(self.network(inputs), targets)
            loss.backward()
            self.optimizer.step()
        finally:
            self.network.eval()
        self.train_steps += 1
        return float(loss.item())

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def state_dict(self) -> dict:
        """Return a detached snapshot of weights, optimizer state, and counters."""
        return {
            "embedding_dim": self.embedding_dim,
            "hidden_units": list(self.hidden_units),
            "learning_rate": self.learning_rate,
            "train_steps": self.train_steps,
            "network": {k: v.detach().clone() for k, v in self.network.state_dict().items()},
            "optimizer": _clone_optimizer_state(self.optimizer.state_dict()),
        }

    @classmethod
    def from_state(cls, state: dict) -> "RankingModel":
        """Rebuild a model from `state_dict()` output.

        Raises:
            KeyError, RuntimeError, ValueError: When the snapshot is incomplete or
            does not match the declared architecture.
        """
        model = cls(
            embedding_dim=state["embedding_dim"],
            hidden_units=state["hidden_units"],
            learning_rate=state["learning_rate"],
        )
        model.network.load_state_dict(state["network"])
        model.optimizer.load_state_dict(state["optimizer"])
        model.train_steps = int(state["train_steps"])
        return model

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _as_inputs(self, embeddings: list) -> torch.Tensor:
        if not embeddings:
            return torch.zeros((0, self.embedding_dim), dtype=torch.float32)
        try:
            array = np.stack([np.asarray(e, dtype=np.float32).reshape(-1) for e in embeddings])
        except (TypeError, ValueError) as exc:
            raise InvalidInputError(
                f"embeddings must be numeric vectors of length {self.embedding_dim}"
            ) from exc
        if array.shape[1] != self.embedding_dim:
            raise InvalidInputError(
                f"embedding has dimension {array.shape[1]}, expected {self.embedding_dim}"
            )
        if not np.all(np.isfinite(array)):
            raise InvalidInputError("embedding contains non-finite values")
        return torch.from_numpy(array)


def _clone_optimizer_state(state: dict) -> dict:
    """Deep-copy tensors in an optimizer state dict."""
    return {
        "state": {
            key: {
                name: value.detach().clone() if torch.is_tensor(value) else value
                for name, value in param_state.items()
            }
            for key, param_state in state["state"].items()
        },
        "param_groups": [dict(group) for group in state["param_groups"]],
    }
