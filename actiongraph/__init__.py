import asyncio, warnings, copy, time, contextvars, contextlib, itertools
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional, List, Dict
from enum import Enum

__all__ = [
    "ActionGraphError", "NoRootNodeError", "InvalidActionKind", "UseAsyncFlowError", "UseAsyncNodeError",
    "FlowWarning", "TraceEventType", "TraceEvent", "NodeTiming", "FlowTracer", "clone_value",
    "BaseNode", "ConditionalTransition", "Node", "BatchNode", "Flow", "BatchFlow",
    "AsyncNode", "AsyncBatchNode", "AsyncParallelBatchNode", "AsyncFlow", "AsyncBatchFlow", "AsyncParallelBatchFlow",
]

# --- Errors and diagnostics ---

class ActionGraphError(Exception):
    """Base exception for all errors raised by the orchestration core."""

class NoRootNodeError(ActionGraphError, RuntimeError):
    """Raised when a flow starts without a root node."""

class InvalidActionKind(ActionGraphError, TypeError):
    """Raised when a conditional transition is given a non-string action."""

class UseAsyncFlowError(ActionGraphError, RuntimeError):
    """Raised when an async node or flow is driven through a synchronous entry point."""

class UseAsyncNodeError(ActionGraphError, RuntimeError):
    """Raised when a synchronous node or flow is driven through run_async()."""

class FlowWarning(UserWarning):
    """Non-fatal wiring and routing diagnostics.

    Silence with ``warnings.simplefilter("ignore", FlowWarning)`` or turn into
    errors with ``warnings.simplefilter("error", FlowWarning)``.
    """

def _warn(message):
    warnings.warn(message, FlowWarning, stacklevel=3)

# --- Tracing ---

class TraceEventType(Enum):
    FLOW_START = "flow_start"
    FLOW_END = "flow_end"
    NODE_START = "node_start"
    NODE_PREPARE = "node_prepare"
    NODE_EXECUTE = "node_execute"
    NODE_FINALIZE = "node_finalize"
    NODE_END = "node_end"
    RETRY_ATTEMPT = "retry_attempt"
    RETRY_WAIT = "retry_wait"
    FALLBACK = "fallback"
    TRANSITION = "transition"
    DEAD_END = "dead_end"

@dataclass
class TraceEvent:
    event_type: TraceEventType
    node_name: str
    timestamp: float = field(default_factory=time.time)
    data: Optional[Dict[str, Any]] = None

    def __repr__(self):
        data_str = f", data={self.data}" if self.data else ""
        return f"TraceEvent({self.event_type.value}, node={self.node_name}, t={self.timestamp:.4f}{data_str})"

@dataclass
class NodeTiming:
    """Phase durations (seconds) of one node visit; None where a phase was not recorded."""
    node_name: str
    prepare_time: Optional[float] = None
    execute_time: Optional[float] = None
    finalize_time: Optional[float] = None
    total_time: Optional[float] = None

    def __repr__(self):
        phases = [("prepare", self.prepare_time), ("execute", self.execute_time),
                  ("finalize", self.finalize_time), ("total", self.total_time)]
        times = [f"{label}={value:.4f}s" for label, value in phases if value is not None]
        return f"NodeTiming({self.node_name}, {', '.join(times)})"

# Fields small enough to keep even when payload capture is off
_LIGHT_FIELDS = frozenset(("action", "retry", "max_retries", "retry_delay", "error", "from_node", "to_node", "available", "elapsed", "visit"))

class FlowTracer:
    """Records what a run did, for debugging routing, retries and timing.

    Usage:
        tracer = FlowTracer()
        flow.run(shared, tracer=tracer)
        tracer.print_summary()

    The tracer is installed in a context variable for the duration of the
    run, so nested flows and tasks spawned by the parallel batch variants
    record into the same tracer.
    """
    def __init__(self, capture_data: bool = False, max_data_size: int = 1000):
        """
        Args:
            capture_data: If True, also keep prepared params, execute results and batch payloads
            max_data_size: Maximum repr length of a captured payload (truncated beyond it)
        """
        if max_data_size < 1:
            raise ValueError("max_data_size must be at least 1")
        self.events: List[TraceEvent] = []
        self.capture_data = capture_data
        self.max_data_size = max_data_size

    def _truncate(self, value: Any) -> Optional[str]:
        if value is None:
            return None
        s = repr(value)
        if len(s) > self.max_data_size:
            return s[:self.max_data_size] + "...[truncated]"
        return s

    def record(self, event_type: TraceEventType, node_name: str, data: Optional[Dict[str, Any]] = None):
        kept = None
        if data:
            kept = {}
            for key, value in data.items():
                if key in _LIGHT_FIELDS:
                    kept[key] = value
                elif self.capture_data:
                    kept[key] = self._truncate(value)
            kept = kept or None
        self.events.append(TraceEvent(event_type, node_name, time.time(), kept))

    def _of(self, event_type: TraceEventType) -> List[TraceEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def get_execution_order(self) -> List[str]:
        """Node names in the order they were visited."""
        return [e.node_name for e in self._of(TraceEventType.NODE_START)]

    def get_transitions(self) -> List[Dict[str, str]]:
        return [{"from": e.data["from_node"], "to": e.data["to_node"], "action": e.data["action"]}
                for e in self._of(TraceEventType.TRANSITION) if e.data]

    def get_retries(self) -> List[Dict[str, Any]]:
        return [{"node": e.node_name, **e.data} for e in self._of(TraceEventType.RETRY_ATTEMPT) if e.data]

    def get_fallbacks(self) -> List[Dict[str, Any]]:
        return [{"node": e.node_name, "error": (e.data or {}).get("error")} for e in self._of(TraceEventType.FALLBACK)]

    def get_dead_ends(self) -> List[Dict[str, Any]]:
        """Routing misses: the node returned an action none of its successors is registered under."""
        return [{"node": e.node_name, **(e.data or {})} for e in self._of(TraceEventType.DEAD_END)]

    def get_duration(self) -> float:
        if not self.events:
            return 0.0
        return self.events[-1].timestamp - self.events[0].timestamp

    def get_node_timings(self) -> List[NodeTiming]:
        """Per-visit phase timings, in the order the visits finished.

        A node that is visited several times (cycles, batches) gets one
        entry per visit. Events are paired by their visit id, so concurrent
        traversals of the same node do not overwrite each other.
        """
        phase_fields = {
            TraceEventType.NODE_PREPARE: "prepare_time",
            TraceEventType.NODE_EXECUTE: "execute_time",
            TraceEventType.NODE_FINALIZE: "finalize_time",
        }
        open_visits: Dict[Any, Dict[str, Any]] = {}
        timings = []
        for event in self.events:
            name = event.node_name
            key = (event.data or {}).get("visit") or name
            if event.event_type == TraceEventType.NODE_START:
                open_visits[key] = {"start": event.timestamp}
            elif event.event_type in phase_fields and key in open_visits and event.data:
                open_visits[key][phase_fields[event.event_type]] = event.data.get("elapsed")
            elif event.event_type == TraceEventType.NODE_END and key in open_visits:
                visit = open_visits.pop(key)
                start = visit.pop("start")
                timings.append(NodeTiming(node_name=name, total_time=event.timestamp - start, **visit))
        return timings

    def print_summary(self):
        """Print a human-readable summary of the trace."""
        if not self.events:
            print("No trace events recorded.")
            return

        print(f"\n{'='*60}")
        print("FLOW EXECUTION TRACE")
        print(f"{'='*60}")
        print(f"Total duration: {self.get_duration():.4f}s")
        print(f"Total events: {len(self.events)}")
        print(f"\nExecution order: {' -> '.join(self.get_execution_order())}")

        transitions = self.get_transitions()
        if transitions:
            print("\nTransitions:")
            for t in transitions:
                print(f"  {t['from']} --[{t['action']}]--> {t['to']}")

        retries = self.get_retries()
        if retries:
            print("\nRetries:")
            for r in retries:
                print(f"  {r['node']}: attempt {r.get('retry', '?')}/{r.get('max_retries', '?')}")

        for fallback in self.get_fallbacks():
            print(f"\nFallback in {fallback['node']}: {fallback['error']}")

        for miss in self.get_dead_ends():
            print(f"\nDead end at {miss['node']}: '{miss.get('action')}' not in {miss.get('available')}")

        timings = self.get_node_timings()
        if timings:
            print("\nNode timings:")
            for t in timings:
                print(f"  {t!r}")

        print(f"{'='*60}\n")

    def to_dict(self) -> Dict[str, Any]:
        """Export the trace as plain data."""
        return {
            "duration": self.get_duration(),
            "execution_order": self.get_execution_order(),
            "transitions": self.get_transitions(),
            "retries": self.get_retries(),
            "fallbacks": self.get_fallbacks(),
            "dead_ends": self.get_dead_ends(),
            "node_timings": [
                {
                    "node_name": t.node_name,
                    "prepare_time": t.prepare_time,
                    "execute_time": t.execute_time,
                    "finalize_time": t.finalize_time,
                    "total_time": t.total_time,
                }
                for t in self.get_node_timings()
            ],
            "events": [
                {"type": e.event_type.value, "node": e.node_name, "timestamp": e.timestamp, "data": e.data}
                for e in self.events
            ],
        }

    def clear(self):
        self.events.clear()

# Context variable so concurrent tasks each see the tracer of the run that spawned them
_current_tracer: contextvars.ContextVar[Optional[FlowTracer]] = contextvars.ContextVar('_current_tracer', default=None)

@contextlib.contextmanager
def _tracing(tracer):
    token = _current_tracer.set(tracer) if tracer is not None else None
    try: yield _current_tracer.get()
    finally:
        if token is not None: _current_tracer.reset(token)

def _node_name(node) -> str:
    return getattr(node, "name", None) or type(node).__name__

_VISIT_EVENTS = frozenset((TraceEventType.NODE_START, TraceEventType.NODE_PREPARE, TraceEventType.NODE_EXECUTE,
                           TraceEventType.NODE_FINALIZE, TraceEventType.NODE_END))
_visit_ids = itertools.count(1)

def _begin_visit(node):
    node._visit = next(_visit_ids)

def _trace(tracer, event_type, node, **data):
    if tracer is None: return
    # Per-visit events carry the visit id so interleaved traversals can be told apart
    if event_type in _VISIT_EVENTS: data["visit"] = getattr(node, "_visit", None)
    tracer.record(event_type, _node_name(node), data or None)

# --- Parameter values ---

_ATOMIC = (str, bytes, int, float, complex, bool, type(None))

def clone_value(value, _memo=None):
    """Return a copy of a parameter value that shares no mutable container with it.

    Dicts, lists, tuples and sets are rebuilt recursively and self-references
    are reproduced in the copy. Scalars are immutable and returned as is.
    Other objects are opaque to the core and stay shared by reference.
    """
    if isinstance(value, _ATOMIC): return value
    if _memo is None: _memo = {}
    if id(value) in _memo: return _memo[id(value)]
    if isinstance(value, dict):
        out = _memo[id(value)] = copy.copy(value)
        for k, v in value.items(): out[k] = clone_value(v, _memo)
    elif isinstance(value, list):
        out = _memo[id(value)] = copy.copy(value)
        out[:] = [clone_value(v, _memo) for v in value]
    elif isinstance(value, tuple):
        items = [clone_value(v, _memo) for v in value]
        out = _memo[id(value)] = type(value)(*items) if hasattr(value, "_fields") else type(value)(items)
    elif isinstance(value, (set, frozenset)):
        out = _memo[id(value)] = type(value)(clone_value(v, _memo) for v in value)
    else:
        out = value
    return out

def _as_batch(items):
    if items is None: return []
    if isinstance(items, (str, bytes, bytearray, Mapping)) or not isinstance(items, Sequence): return [items]
    return items

# --- Nodes ---

class BaseNode:
    def __init__(self): self.parameters,self.successors,self.name={},{},None
    def set_parameters(self,params):
        if params is None: params={}
        if not isinstance(params,Mapping): raise TypeError(f"Parameters must be a mapping, got {type(params).__name__}")
        self.parameters=clone_value(dict(params))
    def clone(self):
        # Own copy of the parameters; successors are shared and get cloned lazily when visited
        other=copy.copy(self)
        other.parameters,other.successors=clone_value(self.parameters),dict(self.successors)
        return other
    def connect(self,node,action="default"):
        if action in self.successors: _warn(f"Overwriting successor for action '{action}'")
        self.successors[action]=node; return node
    def when(self,action):
        if not isinstance(action,str): raise InvalidActionKind(f"Action must be a string, got {type(action).__name__}")
        return ConditionalTransition(self,action)
    def prepare(self,shared): pass
    def execute(self,params): pass
    def finalize(self,shared,prepared,result): pass
    def _execute(self,params): return self.execute(params)
    def _run(self,shared):
        tracer=_current_tracer.get()
        started=time.perf_counter()
        prepared=self.prepare(shared)
        params=self.parameters if prepared is None else prepared
        _trace(tracer,TraceEventType.NODE_PREPARE,self,elapsed=time.perf_counter()-started,params=params)
        started=time.perf_counter()
        result=self._execute(params)
        _trace(tracer,TraceEventType.NODE_EXECUTE,self,elapsed=time.perf_counter()-started,result=result)
        started=time.perf_counter()
        self.finalize(shared,params,result)
        _trace(tracer,TraceEventType.NODE_FINALIZE,self,elapsed=time.perf_counter()-started)
        return result
    def run(self,shared,tracer=None):
        if self.successors: _warn("Node won't run successors. Use Flow.")
        with _tracing(tracer) as active:
            _begin_visit(self)
            _trace(active,TraceEventType.NODE_START,self)
            result=self._run(shared)
            _trace(active,TraceEventType.NODE_END,self)
        return result
    async def run_async(self,shared,tracer=None):
        raise UseAsyncNodeError(f"{_node_name(self)} is synchronous; call run() or subclass AsyncNode/AsyncFlow.")
    def __rshift__(self,other): return self.connect(other)
    def __sub__(self,action): return self.when(action)

class ConditionalTransition:
    def __init__(self,source,action): self.source,self.action=source,action
    def to(self,target): return self.source.connect(target,self.action)
    def __rshift__(self,target): return self.to(target)

class Node(BaseNode):
    def __init__(self,max_retries=1,retry_delay=0):
        super().__init__()
        if max_retries<1: raise ValueError("max_retries must be at least 1")
        if retry_delay<0: raise ValueError("retry_delay must not be negative")
        self.max_retries,self.retry_delay,self.current_retry_index=max_retries,retry_delay,0
    def execute_fallback(self,params,exc): raise exc
    def _execute(self,params):
        tracer=_current_tracer.get()
        for attempt in range(self.max_retries):
            self.current_retry_index=attempt
            if self.max_retries>1: _trace(tracer,TraceEventType.RETRY_ATTEMPT,self,retry=attempt+1,max_retries=self.max_retries)
            try: return self.execute(params)
            except Exception as exc:
                if attempt==self.max_retries-1:
                    _trace(tracer,TraceEventType.FALLBACK,self,error=str(exc))
                    return self.execute_fallback(params,exc)
                _trace(tracer,TraceEventType.RETRY_WAIT,self,retry_delay=self.retry_delay,error=str(exc))
                if self.retry_delay>0: time.sleep(self.retry_delay)

class BatchNode(Node):
    def _execute(self,items): return [super(BatchNode,self)._execute(clone_value(item)) for item in _as_batch(items)]

# --- Flows ---

class Flow(BaseNode):
    def __init__(self,root=None): super().__init__(); self.root_node=root
    def set_root(self,node): self.root_node=node; return node
    def get_next_node(self,current,action):
        label="default" if action is None or (isinstance(action,str) and not action) else action
        try: nxt=current.successors.get(label)
        except TypeError: nxt=None  # unhashable execute result, never a label
        if nxt is None and current.successors:
            available=list(current.successors)
            _warn(f"Flow ends: '{label}' not found in {available}")
            _trace(_current_tracer.get(),TraceEventType.DEAD_END,current,action=label,available=available)
        return nxt
    def _start(self,params):
        if self.root_node is None: raise NoRootNodeError(f"{_node_name(self)} has no root node; call set_root() first")
        return self.root_node.clone(),(self.parameters if params is None else params)
    def _enter(self,current,incoming,tracer):
        # Incoming values win over the node's own defaults
        merged={**current.parameters,**incoming}
        current.set_parameters(merged)
        _begin_visit(current)
        _trace(tracer,TraceEventType.NODE_START,current)
        return merged
    def _advance(self,current,action,tracer):
        _trace(tracer,TraceEventType.NODE_END,current)
        nxt=self.get_next_node(current,action)
        if nxt is None: return None
        label="default" if action is None or (isinstance(action,str) and not action) else action
        _trace(tracer,TraceEventType.TRANSITION,self,from_node=_node_name(current),to_node=_node_name(nxt),action=label)
        return nxt.clone()
    def _orchestrate(self,shared,params=None):
        tracer=_current_tracer.get()
        current,incoming=self._start(params)
        action=None
        while current is not None:
            # The merged set, not the execute result, is the baseline for the next hop
            incoming=self._enter(current,incoming,tracer)
            action=current._run(shared)
            current=self._advance(current,action,tracer)
        return action
    def _run(self,shared):
        prepared=self.prepare(shared)
        params=self.parameters if prepared is None else prepared
        result=self._orchestrate(shared,params)
        self.finalize(shared,params,result)
        return result
    def run(self,shared,tracer=None):
        if self.successors: _warn("Flow won't run its successors. Nest it in a parent Flow.")
        with _tracing(tracer) as active:
            _trace(active,TraceEventType.FLOW_START,self)
            result=self._run(shared)
            _trace(active,TraceEventType.FLOW_END,self)
        return result

class BatchFlow(Flow):
    def _item_params(self,item):
        if not isinstance(item,Mapping): raise TypeError(f"Batch items must be parameter mappings, got {type(item).__name__}")
        return {**self.parameters,**item}
    def _run(self,shared):
        batch=self.prepare(shared) or []
        for item in batch: self._orchestrate(shared,self._item_params(item))
        self.finalize(shared,batch,None)

# --- Async ---

async def _gather_all(coros):
    """Run coroutines concurrently; results come back in input order.

    Every coroutine runs to completion even when a sibling fails. Afterwards
    the first failure to occur is raised.
    """
    failures=[]
    async def settle(coro):
        try: return await coro
        except Exception as exc: failures.append(exc)
    results=await asyncio.gather(*(settle(c) for c in coros))
    if failures: raise failures[0]
    return list(results)

class AsyncNode(Node):
    async def prepare_async(self,shared): pass
    async def execute_async(self,params): pass
    async def execute_fallback_async(self,params,exc): raise exc
    async def finalize_async(self,shared,prepared,result): pass
    async def _execute_async(self,params):
        tracer=_current_tracer.get()
        for attempt in range(self.max_retries):
            self.current_retry_index=attempt
            if self.max_retries>1: _trace(tracer,TraceEventType.RETRY_ATTEMPT,self,retry=attempt+1,max_retries=self.max_retries)
            try: return await self.execute_async(params)
            except Exception as exc:
                if attempt==self.max_retries-1:
                    _trace(tracer,TraceEventType.FALLBACK,self,error=str(exc))
                    return await self.execute_fallback_async(params,exc)
                _trace(tracer,TraceEventType.RETRY_WAIT,self,retry_delay=self.retry_delay,error=str(exc))
                if self.retry_delay>0: await asyncio.sleep(self.retry_delay)
    async def _run_async(self,shared):
        tracer=_current_tracer.get()
        started=time.perf_counter()
        prepared=await self.prepare_async(shared)
        params=self.parameters if prepared is None else prepared
        _trace(tracer,TraceEventType.NODE_PREPARE,self,elapsed=time.perf_counter()-started,params=params)
        started=time.perf_counter()
        result=await self._execute_async(params)
        _trace(tracer,TraceEventType.NODE_EXECUTE,self,elapsed=time.perf_counter()-started,result=result)
        started=time.perf_counter()
        await self.finalize_async(shared,params,result)
        _trace(tracer,TraceEventType.NODE_FINALIZE,self,elapsed=time.perf_counter()-started)
        return result
    async def run_async(self,shared,tracer=None):
        if self.successors: _warn("Node won't run successors. Use AsyncFlow.")
        with _tracing(tracer) as active:
            _begin_visit(self)
            _trace(active,TraceEventType.NODE_START,self)
            result=await self._run_async(shared)
            _trace(active,TraceEventType.NODE_END,self)
        return result
    def _run(self,shared): raise UseAsyncFlowError(f"{_node_name(self)} is asynchronous; call run_async() or run it inside an AsyncFlow.")

class AsyncBatchNode(AsyncNode,BatchNode):
    async def _execute_async(self,items): return [await super(AsyncBatchNode,self)._execute_async(clone_value(item)) for item in _as_batch(items)]

class AsyncParallelBatchNode(AsyncNode,BatchNode):
    async def _execute_async(self,items):
        # current_retry_index is last-write-wins across the concurrent items
        execute_one=super(AsyncParallelBatchNode,self)._execute_async
        return await _gather_all(execute_one(clone_value(item)) for item in _as_batch(items))

class AsyncFlow(Flow,AsyncNode):
    async def _orchestrate_async(self,shared,params=None):
        tracer=_current_tracer.get()
        current,incoming=self._start(params)
        action=None
        while current is not None:
            incoming=self._enter(current,incoming,tracer)
            # Sync nodes run off the loop so their blocking work and retry sleeps do not stall sibling tasks
            if isinstance(current,AsyncNode): action=await current._run_async(shared)
            else: action=await asyncio.to_thread(current._run,shared)
            current=self._advance(current,action,tracer)
        return action
    async def _run_async(self,shared):
        prepared=await self.prepare_async(shared)
        params=self.parameters if prepared is None else prepared
        result=await self._orchestrate_async(shared,params)
        await self.finalize_async(shared,params,result)
        return result
    async def run_async(self,shared,tracer=None):
        if self.successors: _warn("Flow won't run its successors. Nest it in a parent AsyncFlow.")
        with _tracing(tracer) as active:
            _trace(active,TraceEventType.FLOW_START,self)
            result=await self._run_async(shared)
            _trace(active,TraceEventType.FLOW_END,self)
        return result
    def _run(self,shared): raise UseAsyncFlowError(f"{_node_name(self)} is asynchronous; call run_async() or nest it in an AsyncFlow.")

class AsyncBatchFlow(AsyncFlow,BatchFlow):
    async def _run_async(self,shared):
        batch=await self.prepare_async(shared) or []
        for item in batch: await self._orchestrate_async(shared,self._item_params(item))
        await self.finalize_async(shared,batch,None)

class AsyncParallelBatchFlow(AsyncFlow,BatchFlow):
    async def _run_async(self,shared):
        batch=await self.prepare_async(shared) or []
        # Build every item's params up front so a bad item fails before any traversal starts
        await _gather_all(self._orchestrate_async(shared,params) for params in [self._item_params(item) for item in batch])
        await self.finalize_async(shared,batch,None)
