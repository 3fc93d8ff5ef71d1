# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Training - optimizers that add update operations to a graph.

Usage:
    optimizer = GradientDescentOptimizer(ops.constant(scope, np.float32(0.1)))
    slots, step = optimizer.minimize(
        scope, loss, MinimizeOptions().with_variables([x])
    )
    session.run(targets=[x.initializer] + [v.initializer for v in slots])
    for _ in range(100):
        session.run(targets=[step])
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, Optional, Sequence

import numpy as np

from . import ops
from .core.types import DataType
from .graph import Operation, Output
from .scope import Scope
from .variable import Variable

logger = logging.getLogger("tensorbind.train")

GradAndVar = tuple[Optional[Output], Variable]


@dataclass(frozen=True)
class MinimizeOptions:
    """Options for ``Optimizer.minimize``."""

    variables: tuple = ()

    def with_variables(self, variables: Sequence[Variable]) -> "MinimizeOptions":
        """Set the variables to optimize."""
        return replace(self, variables=tuple(variables))


@dataclass(frozen=True)
class ComputeGradientsOptions:
    """Options for ``Optimizer.compute_gradients``."""

    variables: tuple = ()

    def with_variables(self, variables: Sequence[Variable]) -> "ComputeGradientsOptions":
        """Set the variables whose gradients are computed."""
        return replace(self, variables=tuple(variables))


@dataclass(frozen=True)
class ApplyGradientsOptions:
    """Options for ``Optimizer.apply_gradients``."""

    grads_and_vars: tuple = ()

    def with_grads_and_vars(
        self, grads_and_vars: Sequence[GradAndVar]
    ) -> "ApplyGradientsOptions":
        """Set the variables to update and their gradients."""
        return replace(self, grads_and_vars=tuple(grads_and_vars))


class Optimizer(ABC):
    """
    Adjusts variables to minimize a value.

    ``minimize`` is ``compute_gradients`` followed by ``apply_gradients``;
    call the two separately to modify gradients in between (e.g. for
    clipping).
    """

    def compute_gradients(
        self, scope: Scope, loss: Output, opts: ComputeGradientsOptions
    ) -> list[GradAndVar]:
        """
        Gradient of ``loss`` for each variable.

        Adds nodes to the graph, so reuse the result where possible. A
        variable that ``loss`` does not depend on gets a None gradient.
        """
        gradients = scope.graph.add_gradients(
            [ops.as_output(loss)], [v.output for v in opts.variables]
        )
        return list(zip(gradients, opts.variables))

    @abstractmethod
    def apply_gradients(
        self, scope: Scope, opts: ApplyGradientsOptions
    ) -> tuple[list[Variable], Operation]:
        """
        Add operations applying the gradients once.

        Returns:
            Variables the optimizer created for its own state (to be
            initialized), and the operation performing one update.
        """
        pass

    def minimize(
        self, scope: Scope, loss: Output, opts: MinimizeOptions
    ) -> tuple[list[Variable], Operation]:
        """Add operations performing one minimization step of ``loss``."""
        grads_and_vars = self.compute_gradients(
            scope, loss, ComputeGradientsOptions(variables=opts.variables)
        )
        skipped = [v.name for g, v in grads_and_vars if g is None]
        if skipped:
            logger.info("no gradient for %s; left unchanged", ", ".join(skipped))
        return self.apply_gradients(
            scope, ApplyGradientsOptions(grads_and_vars=tuple(grads_and_vars))
        )


class GradientDescentOptimizer(Optimizer):
    """
    Plain gradient descent: ``var -= learning_rate * grad``.

    Args:
        learning_rate: Scalar Output of the variables' type.
    """

    def __init__(self, learning_rate: Output):
        self.learning_rate = ops.as_output(learning_rate)

    def apply_gradients(
        self, scope: Scope, opts: ApplyGradientsOptions
    ) -> tuple[list[Variable], Operation]:
        apply_ops = []
        for grad, var in opts.grads_and_vars:
            if grad is None:
                continue
            apply_ops.append(
                ops.build(scope, "ApplyGradientDescent", [var.output, self.learning_rate, grad])
            )
        return [], ops.no_op(scope, control_inputs=apply_ops)


def _create_zeros_slot(
    scope: Scope, primary: Variable, dtype: Optional[DataType] = None
) -> Variable:
    """Variable shaped like ``primary``, initialized to zeros after it."""
    zeros = ops.build(
        scope,
        "ZerosLike",
        [primary.output],
        control_inputs=[primary.initializer],
    )
    return (
        Variable.builder()
        .initial_value(zeros)
        .shape(primary.shape)
        .data_type(dtype or primary.dtype)
        .build(scope)
    )


class AdadeltaOptimizer(Optimizer):
    """
    Adadelta (M. D. Zeiler, https://arxiv.org/abs/1212.5701).

    Hyperparameters left unset become float32 constants: learning rate
    0.001, rho 0.95 and epsilon 1e-8.
    """

    def __init__(
        self,
        learning_rate: Optional[Output] = None,
        rho: Optional[Output] = None,
        epsilon: Optional[Output] = None,
    ):
        self.learning_rate = learning_rate
        self.rho = rho
        self.epsilon = epsilon

    def set_learning_rate(self, learning_rate: Output) -> None:
        self.learning_rate = learning_rate

    def set_rho(self, rho: Output) -> None:
        self.rho = rho

    def set_epsilon(self, epsilon: Output) -> None:
        self.epsilon = epsilon

    @staticmethod
    def _or_constant(scope: Scope, value: Optional[Any], default: float) -> Output:
        if value is None:
            return ops.constant(scope, np.float32(default))
        return ops.as_output(value)

    def apply_gradients(
        self, scope: Scope, opts: ApplyGradientsOptions
    ) -> tuple[list[Variable], Operation]:
        learning_rate = self._or_constant(scope, self.learning_rate, 0.001)
        rho = self._or_constant(scope, self.rho, 0.95)
        epsilon = self._or_constant(scope, self.epsilon, 1e-8)

        apply_ops = []
        variables = []
        for grad, var in opts.grads_and_vars:
            if grad is None:
                continue
            var_scope = scope.new_sub_scope(var.name)
            accum = _create_zeros_slot(var_scope.new_sub_scope("accum"), var)
            accum_update = _create_zeros_slot(var_scope.new_sub_scope("accum_update"), var)
            apply_ops.append(
                ops.build(
                    var_scope,
                    "ApplyAdadelta",
                    [
                        var.output,
                        accum.output,
                        accum_update.output,
                        learning_rate,
                        rho,
                        epsilon,
                        grad,
                    ],
                )
            )
            variables.extend([accum, accum_update])

        return variables, ops.no_op(scope, control_inputs=apply_ops)
