from __future__ import annotations
import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import values
from extensions import HookRegistry, ObserverError
from lexer import StepwiseError
from parser import (
    Node,
    Program,
    build_node_index,
    resolve_options,
    to_dict,
)


logger = logging.getLogger(__name__)

STATUS_READY = "ready"
STATUS_RUNNING = "running"
STATUS_DONE = "done"
STATUS_ERROR = "error"

INITIAL_STAGES = {
    "Program": "evaluate-body",
    "BlockStatement": "enter",
    "VariableDeclaration": "declare",
    "ExpressionStatement": "evaluate-expr",
    "AssignmentStatement": "evaluate-expr",
    "Literal": "eval",
    "Identifier": "lookup",
    "BinaryExpression": "evaluate-left",
    "UnaryExpression": "evaluate-arg",
    "AssignmentExpression": "evaluate-right",
    "IfStatement": "evaluate-test",
    "WhileStatement": "enter",
    "ForStatement": "enter",
}


class ExecutionFault(StepwiseError):
    """Raised by a transition that cannot complete; ends the run."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass
class ExecutionOptions:
    max_steps: int = 10000
    max_scope_depth: int = 100
    max_trace_length: int = 50000
    hooks: Optional[HookRegistry] = None


@dataclass
class Binding:
    name: str
    kind: str
    value: Any = None
    declared_at_node_id: Optional[int] = None
    initialized: bool = False


@dataclass
class Scope:
    id: int
    parent_id: Optional[int]
    reason: str = "global"
    bindings: Dict[str, Binding] = field(default_factory=dict)

    def snapshot(self) -> Dict[str, str]:
        def _render(binding: Binding) -> str:
            if not binding.initialized:
                return f"{binding.kind}:<uninitialized>"
            rendered = values.to_repr(binding.value)
            if len(rendered) > 80:
                rendered = rendered[:77] + "..."
            return f"{binding.kind}:{rendered}"

        return {name: _render(b) for name, b in self.bindings.items()}


@dataclass(frozen=True)
class BindingRef:
    binding: Binding
    scope_id: int


@dataclass
class Frame:
    node_id: int
    node_type: str
    stage: str
    child_index: int = 0
    scope_id: int = 0
    eval_depth: int = 0
    iteration: int = 0


@dataclass(frozen=True)
class Event:
    type: str
    step: int
    data: Tuple[Tuple[str, Any], ...] = ()

    def __getitem__(self, key: str) -> Any:
        if key == "type":
            return self.type
        if key == "step":
            return self.step
        for name, value in self.data:
            if name == key:
                return value
        raise KeyError(key)

    def __getattr__(self, key: str) -> Any:
        if key.startswith("__") or key == "data":
            raise AttributeError(key)
        for name, value in self.data:
            if name == key:
                return value
        raise AttributeError(f"{self.type} event has no field '{key}'")

    def __contains__(self, key: str) -> bool:
        return key in ("type", "step") or any(name == key for name, _ in self.data)

    def get(self, key: str, default: Any = None) -> Any:
        try:
            return self[key]
        except KeyError:
            return default

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type, "step": self.step}
        out.update(self.data)
        return out


@dataclass
class ExecutionSnapshot:
    ip_stack: List[Frame]
    eval_stack: List[Any]
    scope_stack: List[Scope]
    trace: Tuple[Event, ...]
    step_counter: int
    status: str
    last_error: Optional[Dict[str, str]]
    stats: Dict[str, int]


class ExecutionState:
    def __init__(self, ast: Node, options: ExecutionOptions) -> None:
        self.ast = ast
        self.options = options
        self.hooks = options.hooks
        self.node_index = build_node_index(ast)
        self.step_counter = 0
        self.ip_stack: List[Frame] = []
        self.eval_stack: List[Any] = []
        self.scope_stack: List[Scope] = []
        self.trace: List[Event] = []
        self.status = STATUS_READY
        self.last_error: Optional[Dict[str, str]] = None
        self.stats = {
            "steps_executed": 0,
            "transitions": 0,
            "peak_scope_depth": 1,
            "peak_frame_depth": 0,
            "peak_eval_depth": 0,
        }
        self._pending_fault: Optional[ExecutionFault] = None
        self.global_scope = Scope(id=0, parent_id=None, reason="global")
        self.scope_stack.append(self.global_scope)
        self._handlers: Dict[Tuple[str, str], Callable[[Frame, Any], None]] = {
            ("Program", "evaluate-body"): self._program_body,
            ("Program", "done"): self._program_done,
            ("Program", "halt"): self._program_halt,
            ("Program", "finish"): self._program_finish,
            ("BlockStatement", "enter"): self._block_enter,
            ("BlockStatement", "open-scope"): self._block_open_scope,
            ("BlockStatement", "evaluate-body"): self._block_body,
            ("BlockStatement", "exit"): self._block_exit,
            ("BlockStatement", "close-scope"): self._block_close_scope,
            ("VariableDeclaration", "declare"): self._declaration_enter,
            ("VariableDeclaration", "bind"): self._declaration_bind,
            ("VariableDeclaration", "evaluate-init"): self._declaration_evaluate_init,
            ("VariableDeclaration", "assign"): self._declaration_assign,
            ("VariableDeclaration", "done"): self._statement_done,
            ("ExpressionStatement", "evaluate-expr"): self._expression_statement_enter,
            ("ExpressionStatement", "done"): self._expression_statement_done,
            ("AssignmentStatement", "evaluate-expr"): self._assignment_statement_enter,
            ("AssignmentStatement", "assign"): self._assignment_statement_assign,
            ("AssignmentStatement", "done"): self._statement_done,
            ("Literal", "eval"): self._literal_eval,
            ("Literal", "done"): self._expression_done,
            ("Identifier", "lookup"): self._identifier_lookup,
            ("Identifier", "done"): self._expression_done,
            ("BinaryExpression", "evaluate-left"): self._binary_left,
            ("BinaryExpression", "evaluate-right"): self._binary_right,
            ("BinaryExpression", "compute-op"): self._binary_compute,
            ("BinaryExpression", "done"): self._expression_done,
            ("UnaryExpression", "evaluate-arg"): self._unary_argument,
            ("UnaryExpression", "compute-op"): self._unary_compute,
            ("UnaryExpression", "done"): self._expression_done,
            ("AssignmentExpression", "evaluate-right"): self._assignment_expression_right,
            ("AssignmentExpression", "assign"): self._assignment_expression_assign,
            ("AssignmentExpression", "done"): self._expression_done,
            ("IfStatement", "evaluate-test"): self._if_enter,
            ("IfStatement", "branch-decision"): self._if_branch,
            ("IfStatement", "done"): self._statement_done,
            ("WhileStatement", "enter"): self._while_enter,
            ("WhileStatement", "evaluate-test"): self._loop_evaluate_test,
            ("WhileStatement", "branch-decision"): self._loop_branch,
            ("WhileStatement", "iterate"): self._loop_iterate,
            ("WhileStatement", "done"): self._statement_done,
            ("ForStatement", "enter"): self._for_enter,
            ("ForStatement", "open-scope"): self._for_open_scope,
            ("ForStatement", "init"): self._for_init,
            ("ForStatement", "discard-init"): self._for_discard,
            ("ForStatement", "evaluate-test"): self._loop_evaluate_test,
            ("ForStatement", "branch-decision"): self._loop_branch,
            ("ForStatement", "iterate"): self._loop_iterate,
            ("ForStatement", "update"): self._for_update,
            ("ForStatement", "discard-update"): self._for_discard,
            ("ForStatement", "close-scope"): self._for_close_scope,
            ("ForStatement", "done"): self._statement_done,
        }

    # ---- Introspection ----

    def current_scope(self) -> Scope:
        return self.scope_stack[-1]

    def current_frame(self) -> Optional[Frame]:
        return self.ip_stack[-1] if self.ip_stack else None

    def find_binding(self, name: str) -> Optional[BindingRef]:
        for scope in reversed(self.scope_stack):
            binding = scope.bindings.get(name)
            if binding is not None:
                return BindingRef(binding=binding, scope_id=scope.id)
        return None

    def scope_view(self) -> List[Dict[str, Any]]:
        return [
            {"scope_id": s.id, "parent_id": s.parent_id, "reason": s.reason, "bindings": s.snapshot()}
            for s in self.scope_stack
        ]

    def snapshot(self) -> ExecutionSnapshot:
        return ExecutionSnapshot(
            ip_stack=copy.deepcopy(self.ip_stack),
            eval_stack=list(self.eval_stack),
            scope_stack=copy.deepcopy(self.scope_stack),
            trace=tuple(self.trace),
            step_counter=self.step_counter,
            status=self.status,
            last_error=dict(self.last_error) if self.last_error else None,
            stats=dict(self.stats),
        )

    def restore(self, snapshot: ExecutionSnapshot) -> None:
        # Copy again so the same snapshot can be restored more than once.
        self.ip_stack = copy.deepcopy(snapshot.ip_stack)
        self.eval_stack = list(snapshot.eval_stack)
        self.scope_stack = copy.deepcopy(snapshot.scope_stack)
        self.global_scope = self.scope_stack[0]
        self.trace = list(snapshot.trace)
        self.step_counter = snapshot.step_counter
        self.status = snapshot.status
        self.last_error = dict(snapshot.last_error) if snapshot.last_error else None
        self.stats = dict(snapshot.stats)
        self._pending_fault = None

    # ---- Stepping ----

    def step(self) -> Optional[Event]:
        """Perform one transition and return the event it emitted, if any."""
        if self.status != STATUS_RUNNING:
            return None
        emitted = len(self.trace)
        try:
            if self._pending_fault is not None:
                raise self._pending_fault
            frame = self.ip_stack[-1]
            handler = self._handlers.get((frame.node_type, frame.stage))
            if handler is None:
                raise ExecutionFault("unsupported-node", f"Unsupported node type: {frame.node_type}")
            handler(frame, self.node_index[frame.node_id])
            self.stats["transitions"] += 1
        except ExecutionFault as fault:
            self._fail(fault)
            event = self.trace[-1]
            if self.hooks is not None:
                self._notify_after_fault(self.hooks, event)
            return event
        if len(self.trace) == emitted:
            return None
        event = self.trace[-1]
        if self.hooks is not None:
            self._notify(self.hooks, event)
        return event

    def advance(self) -> Optional[Event]:
        """Step through silent transitions until an event is emitted or the run stops."""
        while self.status == STATUS_RUNNING:
            event = self.step()
            if event is not None:
                return event
        return None

    def run(self) -> "ExecutionState":
        while self.status == STATUS_RUNNING:
            self.step()
        return self

    def _notify(self, hooks: HookRegistry, event: Event) -> None:
        try:
            hooks.dispatch(self, event)
        except ExecutionFault as fault:
            self._pending_fault = fault
        except ObserverError as error:
            self._pending_fault = ExecutionFault("hook-failed", str(error))

    def _notify_after_fault(self, hooks: HookRegistry, event: Event) -> None:
        # The run has already faulted, so a failing observer cannot change the outcome.
        try:
            hooks.dispatch(self, event)
        except (ExecutionFault, ObserverError) as error:
            logger.warning("observer of '%s' failed after the run faulted: %s", event.type, error)

    # ---- Events and faults ----

    def _emit(self, event_type: str, **fields: Any) -> Event:
        if self.step_counter >= self.options.max_steps:
            raise ExecutionFault("max-steps", f"Execution step limit of {self.options.max_steps} exceeded")
        if len(self.trace) >= self.options.max_trace_length:
            raise ExecutionFault("trace-overflow", f"Trace buffer exceeded max length of {self.options.max_trace_length}")
        return self._record(event_type, fields)

    def _record(self, event_type: str, fields: Mapping[str, Any]) -> Event:
        event = Event(type=event_type, step=self.step_counter, data=tuple(fields.items()))
        self.trace.append(event)
        self.step_counter += 1
        self.stats["steps_executed"] = self.step_counter
        return event

    def _emit_statement(self, event_type: str, frame: Frame) -> Event:
        return self._emit(event_type, node_id=frame.node_id, node_type=frame.node_type, scope_id=self.current_scope().id)

    def _fail(self, fault: ExecutionFault) -> None:
        self.status = STATUS_ERROR
        self.last_error = {"code": fault.code, "message": fault.message}
        frame = self.current_frame()
        # The terminal event is recorded even past max_trace_length.
        self._record(
            "error",
            {
                "code": fault.code,
                "message": fault.message,
                "node_id": frame.node_id if frame else None,
                "node_type": frame.node_type if frame else None,
                "scope_id": self.current_scope().id,
            },
        )
        logger.debug("run faulted at step %d: %s (%s)", self.step_counter - 1, fault.message, fault.code)

    # ---- Frames, scopes and the value stack ----

    @staticmethod
    def _require(node: Optional[Node]) -> Node:
        if node is None:
            raise ExecutionFault("unsupported-node", "Incomplete syntax tree: a required child node is missing")
        return node

    def _push_node(self, node: Optional[Node]) -> Frame:
        node = self._require(node)
        frame = Frame(
            node_id=node.id,
            node_type=node.type,
            stage=INITIAL_STAGES.get(node.type, "unknown"),
            scope_id=self.current_scope().id,
            eval_depth=len(self.eval_stack),
        )
        self.ip_stack.append(frame)
        if len(self.ip_stack) > self.stats["peak_frame_depth"]:
            self.stats["peak_frame_depth"] = len(self.ip_stack)
        return frame

    def _pop_frame(self) -> Frame:
        return self.ip_stack.pop()

    def _push_scope(self, reason: str) -> Scope:
        if len(self.scope_stack) >= self.options.max_scope_depth:
            raise ExecutionFault("max-scope-depth", f"Scope stack max depth of {self.options.max_scope_depth} exceeded")
        parent = self.current_scope()
        scope = Scope(id=len(self.scope_stack), parent_id=parent.id, reason=reason)
        self.scope_stack.append(scope)
        if len(self.scope_stack) > self.stats["peak_scope_depth"]:
            self.stats["peak_scope_depth"] = len(self.scope_stack)
        self._emit("enter-scope", scope_id=scope.id, parent_scope_id=parent.id, reason=reason)
        return scope

    def _pop_scope(self) -> Scope:
        scope = self.scope_stack.pop()
        self._emit("exit-scope", scope_id=scope.id, reason=f"{scope.reason}-exit")
        return scope

    def _push_value(self, value: Any) -> None:
        self.eval_stack.append(value)
        if len(self.eval_stack) > self.stats["peak_eval_depth"]:
            self.stats["peak_eval_depth"] = len(self.eval_stack)

    def _pop_values(self, count: int, frame: Frame) -> List[Any]:
        # Operands belonging to this frame sit above the depth it was pushed at.
        if len(self.eval_stack) - frame.eval_depth < count:
            raise ExecutionFault(
                "eval-stack-corruption",
                f"{frame.node_type} expected {count} operand(s) but found {len(self.eval_stack) - frame.eval_depth}",
            )
        popped = self.eval_stack[-count:]
        del self.eval_stack[-count:]
        return popped

    def _declare(self, name: str, kind: str, node_id: int) -> Binding:
        scope = self.current_scope()
        if name in scope.bindings:
            raise ExecutionFault("declare-conflict", f'Binding "{name}" already declared in this scope')
        binding = Binding(name=name, kind=kind, declared_at_node_id=node_id)
        scope.bindings[name] = binding
        return binding

    def _assign(self, name: str, value: Any) -> None:
        found = self.find_binding(name)
        if found is None:
            raise ExecutionFault("undeclared-var", f"Undeclared variable: {name}")
        binding = found.binding
        if binding.kind == "const" and binding.initialized:
            raise ExecutionFault("const-reassign", f'Cannot reassign const binding "{name}"')
        self._write(binding, found.scope_id, value)

    def _write(self, binding: Binding, scope_id: int, value: Any) -> None:
        old_value = binding.value
        self._emit(
            "assign",
            name=binding.name,
            old_value=old_value,
            new_value=value,
            kind=binding.kind,
            binding_node_id=binding.declared_at_node_id,
            scope_id=scope_id,
        )
        binding.value = value
        binding.initialized = True

    # ---- Shared stage handlers ----

    def _statement_done(self, frame: Frame, node: Any) -> None:
        self._exit_statement(frame)
        self._pop_frame()

    def _enter_statement(self, frame: Frame, child: Optional[Node]) -> None:
        self._require(child)
        self._emit_statement("enter-statement", frame)
        self._push_node(child)

    def _exit_statement(self, frame: Frame) -> None:
        if len(self.eval_stack) != frame.eval_depth:
            raise ExecutionFault(
                "eval-stack-corruption",
                f"{frame.node_type} left {len(self.eval_stack) - frame.eval_depth} value(s) on the evaluation stack",
            )
        self._emit_statement("exit-statement", frame)

    def _expression_done(self, frame: Frame, node: Any) -> None:
        if len(self.eval_stack) != frame.eval_depth + 1:
            raise ExecutionFault(
                "eval-stack-corruption",
                f"{frame.node_type} produced {len(self.eval_stack) - frame.eval_depth} value(s) instead of one",
            )
        self._pop_frame()

    def _push_child_of_body(self, frame: Frame, body: Tuple[Node, ...], next_stage: str) -> None:
        if frame.child_index < len(body):
            self._push_node(body[frame.child_index])
            frame.child_index += 1
        else:
            frame.stage = next_stage

    # ---- Program ----

    def _program_body(self, frame: Frame, node: Program) -> None:
        if frame.child_index == 0:
            self._emit_statement("enter-statement", frame)
        self._push_child_of_body(frame, node.body, "done")

    def _program_done(self, frame: Frame, node: Program) -> None:
        self._exit_statement(frame)
        frame.stage = "halt"

    def _program_halt(self, frame: Frame, node: Program) -> None:
        self._emit("halt", scope_id=self.current_scope().id)
        frame.stage = "finish"

    def _program_finish(self, frame: Frame, node: Program) -> None:
        # Silent, so observers of the halt event run while the state is still live.
        self._pop_frame()
        self.status = STATUS_DONE
        logger.debug("run finished after %d events", self.step_counter)

    # ---- BlockStatement ----

    def _block_enter(self, frame: Frame, node: Any) -> None:
        self._emit_statement("enter-statement", frame)
        frame.stage = "open-scope"

    def _block_open_scope(self, frame: Frame, node: Any) -> None:
        self._push_scope("block")
        frame.stage = "evaluate-body"

    def _block_body(self, frame: Frame, node: Any) -> None:
        self._push_child_of_body(frame, node.body, "exit")

    def _block_exit(self, frame: Frame, node: Any) -> None:
        self._exit_statement(frame)
        frame.stage = "close-scope"

    def _block_close_scope(self, frame: Frame, node: Any) -> None:
        self._pop_scope()
        self._pop_frame()

    # ---- VariableDeclaration ----

    def _declaration_enter(self, frame: Frame, node: Any) -> None:
        self._emit_statement("enter-statement", frame)
        frame.stage = "bind"

    def _declaration_bind(self, frame: Frame, node: Any) -> None:
        for declarator in node.declarations:
            self._declare(declarator.id.name, node.kind, frame.node_id)
        frame.child_index = self._next_initializer(node, 0)
        frame.stage = "evaluate-init" if frame.child_index < len(node.declarations) else "done"

    def _declaration_evaluate_init(self, frame: Frame, node: Any) -> None:
        self._push_node(node.declarations[frame.child_index].init)
        frame.stage = "assign"

    def _declaration_assign(self, frame: Frame, node: Any) -> None:
        (value,) = self._pop_values(1, frame)
        name = node.declarations[frame.child_index].id.name
        binding = self.scope_stack[frame.scope_id].bindings[name]
        self._write(binding, frame.scope_id, value)
        frame.child_index = self._next_initializer(node, frame.child_index + 1)
        frame.stage = "evaluate-init" if frame.child_index < len(node.declarations) else "done"

    @staticmethod
    def _next_initializer(node: Any, index: int) -> int:
        while index < len(node.declarations) and node.declarations[index].init is None:
            index += 1
        return index

    # ---- ExpressionStatement / AssignmentStatement ----

    def _expression_statement_enter(self, frame: Frame, node: Any) -> None:
        self._enter_statement(frame, node.expression)
        frame.stage = "done"

    def _expression_statement_done(self, frame: Frame, node: Any) -> None:
        self._pop_values(1, frame)
        self._statement_done(frame, node)

    def _assignment_statement_enter(self, frame: Frame, node: Any) -> None:
        self._enter_statement(frame, node.expression.right)
        frame.stage = "assign"

    def _assignment_statement_assign(self, frame: Frame, node: Any) -> None:
        (value,) = self._pop_values(1, frame)
        self._assign(node.expression.left.name, value)
        frame.stage = "done"

    # ---- Expressions ----

    def _literal_eval(self, frame: Frame, node: Any) -> None:
        self._emit(
            "eval-literal",
            node_id=frame.node_id,
            node_type=frame.node_type,
            value=node.value,
            raw=node.raw,
            scope_id=self.current_scope().id,
        )
        self._push_value(node.value)
        frame.stage = "done"

    def _identifier_lookup(self, frame: Frame, node: Any) -> None:
        found = self.find_binding(node.name)
        if found is None:
            raise ExecutionFault("undeclared-var", f"Undeclared variable: {node.name}")
        value = found.binding.value
        self._emit(
            "eval-identifier",
            node_id=frame.node_id,
            node_type=frame.node_type,
            name=node.name,
            value=value,
            found_in_scope_id=found.scope_id,
            scope_id=self.current_scope().id,
        )
        self._push_value(value)
        frame.stage = "done"

    def _binary_left(self, frame: Frame, node: Any) -> None:
        self._push_node(node.left)
        frame.stage = "evaluate-right"

    def _binary_right(self, frame: Frame, node: Any) -> None:
        self._push_node(node.right)
        frame.stage = "compute-op"

    def _binary_compute(self, frame: Frame, node: Any) -> None:
        left, right = self._pop_values(2, frame)
        operator = node.operator
        # Only a number 0 faults; false, null and "" divide under IEEE rules.
        if operator in ("/", "%") and values.kind_of(right) == values.NUMBER and right == 0:
            if operator == "/":
                raise ExecutionFault("div-by-zero", "Division by zero")
            raise ExecutionFault("mod-by-zero", "Modulo by zero")
        try:
            result = values.binary(operator, left, right)
        except ValueError as exc:
            raise ExecutionFault("unsupported-node", str(exc))
        self._emit(
            "eval-binary",
            node_id=frame.node_id,
            node_type=frame.node_type,
            operator=operator,
            left=left,
            right=right,
            value=result,
            scope_id=self.current_scope().id,
        )
        self._push_value(result)
        frame.stage = "done"

    def _unary_argument(self, frame: Frame, node: Any) -> None:
        self._push_node(node.argument)
        frame.stage = "compute-op"

    def _unary_compute(self, frame: Frame, node: Any) -> None:
        (argument,) = self._pop_values(1, frame)
        try:
            result = values.unary(node.operator, argument)
        except ValueError as exc:
            raise ExecutionFault("unsupported-node", str(exc))
        self._emit(
            "eval-unary",
            node_id=frame.node_id,
            node_type=frame.node_type,
            operator=node.operator,
            argument=argument,
            value=result,
            scope_id=self.current_scope().id,
        )
        self._push_value(result)
        frame.stage = "done"

    def _assignment_expression_right(self, frame: Frame, node: Any) -> None:
        self._push_node(node.right)
        frame.stage = "assign"

    def _assignment_expression_assign(self, frame: Frame, node: Any) -> None:
        (value,) = self._pop_values(1, frame)
        self._assign(node.left.name, value)
        self._push_value(value)
        frame.stage = "done"

    # ---- IfStatement ----

    def _if_enter(self, frame: Frame, node: Any) -> None:
        self._enter_statement(frame, node.test)
        frame.stage = "branch-decision"

    def _if_branch(self, frame: Frame, node: Any) -> None:
        (test,) = self._pop_values(1, frame)
        test_value = values.is_truthy(test)
        if test_value:
            direction = "then"
        else:
            direction = "else" if node.alternate is not None else "skip"
        self._emit(
            "branch",
            node_id=frame.node_id,
            node_type=frame.node_type,
            test_value=test_value,
            direction=direction,
            scope_id=self.current_scope().id,
        )
        chosen = node.consequent if test_value else node.alternate
        if chosen is not None:
            self._push_node(chosen)
        frame.stage = "done"

    # ---- WhileStatement / ForStatement ----

    def _while_enter(self, frame: Frame, node: Any) -> None:
        self._enter_statement(frame, node.test)
        frame.stage = "branch-decision"

    def _loop_evaluate_test(self, frame: Frame, node: Any) -> None:
        if node.test is not None:
            self._push_node(node.test)
        frame.stage = "branch-decision"

    def _loop_branch(self, frame: Frame, node: Any) -> None:
        if node.test is None:
            test_value = True
        else:
            (test,) = self._pop_values(1, frame)
            test_value = values.is_truthy(test)
        self._emit(
            "branch",
            node_id=frame.node_id,
            node_type=frame.node_type,
            test_value=test_value,
            direction="loop" if test_value else "exit",
            scope_id=self.current_scope().id,
        )
        if test_value:
            frame.stage = "iterate"
        elif frame.node_type == "ForStatement":
            frame.stage = "close-scope"
        else:
            frame.stage = "done"

    def _loop_iterate(self, frame: Frame, node: Any) -> None:
        frame.iteration += 1
        self._emit(
            "loop-iteration",
            node_id=frame.node_id,
            node_type=frame.node_type,
            iteration=frame.iteration,
            scope_id=self.current_scope().id,
        )
        if node.body is not None:
            self._push_node(node.body)
        frame.stage = "update" if frame.node_type == "ForStatement" else "evaluate-test"

    def _for_enter(self, frame: Frame, node: Any) -> None:
        self._emit_statement("enter-statement", frame)
        frame.stage = "open-scope"

    def _for_open_scope(self, frame: Frame, node: Any) -> None:
        self._push_scope("for")
        frame.stage = "init"

    def _for_init(self, frame: Frame, node: Any) -> None:
        if node.init is None:
            frame.stage = "evaluate-test"
            return
        self._push_node(node.init)
        # A declaration is a statement and leaves nothing to discard.
        frame.stage = "evaluate-test" if node.init.type == "VariableDeclaration" else "discard-init"

    def _for_discard(self, frame: Frame, node: Any) -> None:
        self._pop_values(1, frame)
        frame.stage = "evaluate-test"

    def _for_update(self, frame: Frame, node: Any) -> None:
        if node.update is None:
            frame.stage = "evaluate-test"
            return
        self._push_node(node.update)
        frame.stage = "discard-update"

    def _for_close_scope(self, frame: Frame, node: Any) -> None:
        self._pop_scope()
        frame.stage = "done"


def start(ast: Node, options: Optional[Union[ExecutionOptions, Mapping[str, Any]]] = None, **overrides: Any) -> ExecutionState:
    opts: ExecutionOptions = resolve_options(ExecutionOptions, options, overrides)
    state = ExecutionState(ast, opts)
    state.status = STATUS_RUNNING
    state._push_node(ast)
    logger.debug(
        "run started over %d nodes (max_steps=%d, max_scope_depth=%d, max_trace_length=%d)",
        len(state.node_index),
        opts.max_steps,
        opts.max_scope_depth,
        opts.max_trace_length,
    )
    return state


def run(ast: Node, options: Optional[Union[ExecutionOptions, Mapping[str, Any]]] = None, **overrides: Any) -> ExecutionState:
    return start(ast, options, **overrides).run()


# Event fields that hold identifiers or labels rather than runtime values.
_HIDDEN_FIELDS = {"node_id", "scope_id", "raw", "binding_node_id"}
_TEXT_FIELDS = {"node_type", "direction", "reason", "code", "message", "name", "kind", "operator"}


class TraceFormatter:
    def __init__(self, state: ExecutionState, source: str = "") -> None:
        self.state = state
        self.source = source
        self._source_lines = source.splitlines()

    def format_event(self, event: Event) -> str:
        details = []
        for name, value in event.data:
            if name in _HIDDEN_FIELDS:
                continue
            rendered = value if name in _TEXT_FIELDS else values.to_repr(value)
            details.append(f"{name}={rendered}")
        return f"[{event.step:5d}] {event.type}" + (" " + " ".join(details) if details else "")

    def format_trace(self) -> str:
        return "\n".join(self.format_event(event) for event in self.state.trace)

    def format_text(self, verbose: bool = False) -> str:
        state = self.state
        lines = ["Traceback (most recent statement last):"]
        for frame in state.ip_stack:
            node = state.node_index.get(frame.node_id)
            if node is not None:
                line = node.loc.start.line
                lines.append(f"  line {line}, column {node.loc.start.column}, in {frame.node_type} [{frame.stage}]")
                if 0 < line <= len(self._source_lines):
                    lines.append(f"    {self._source_lines[line - 1].strip()}")
            else:
                lines.append(f"  <unknown location> in {frame.node_type} [{frame.stage}]")
        if verbose:
            for scope in state.scope_view():
                rendered = ", ".join(f"{k}={v}" for k, v in scope["bindings"].items())
                lines.append(f"    Scope {scope['scope_id']} ({scope['reason']}): {rendered}")
        error = state.last_error or {"code": "unknown", "message": "no error recorded"}
        lines.append(f"ExecutionFault: {error['message']} (code: {error['code']}, step: {state.step_counter - 1})")
        return "\n".join(lines)

    def to_json(self, include_ast: bool = False) -> str:
        state = self.state
        data: Dict[str, Any] = {"src": self.source}
        if include_ast:
            data["ast"] = to_dict(state.ast)
        data["trace"] = [event.to_dict() for event in state.trace]
        data["status"] = state.status
        data["error"] = state.last_error
        data["stats"] = state.stats
        return json.dumps(data, indent=2, allow_nan=True)
