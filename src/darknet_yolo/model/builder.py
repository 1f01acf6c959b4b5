"""Compile a parsed topology and its weights into executable chains."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import torch
import torch.nn as nn

from darknet_yolo.blocks.common import MaxPool, Reorg, Route, Shortcut, Upsample
from darknet_yolo.blocks.conv import Conv, autopad, get_activation
from darknet_yolo.errors import ConfigError, DarknetError, GraphError
from darknet_yolo.heads.detect import DetectionHead, HeadSpec
from darknet_yolo.model.config import BlockKind, NetworkSettings, TopologyBlock
from darknet_yolo.model.executor import BufferStore, Chain, Executor
from darknet_yolo.model.weights import WeightReader

logger = logging.getLogger(__name__)


def resolve_index(position: int, value: int) -> int:
    """Translate a route/shortcut reference into a layer position.

    Positions are 1-based (position 0 is the network input). A negative
    value counts back from ``position``; a non-negative value is a 0-based
    Darknet layer index.

    Raises:
        GraphError: If the reference is not a layer before ``position``.
    """
    resolved = position + value if value < 0 else value + 1
    if not 1 <= resolved < position:
        raise GraphError(
            f"layer {position} references {value}, which resolves to {resolved}; "
            f"expected a layer in 1..{position - 1}"
        )
    return resolved


@dataclass
class LayerStep:
    """Descriptor of one layer before chain partitioning.

    Attributes:
        position: 1-based layer position.
        kind: Block kind.
        module: Compute module for feed-forward layers, else None.
        sources: Layer positions read by route/shortcut layers.
        groups: Route channel groups.
        group_id: Route channel group to keep.
        activation: Shortcut activation name.
        head: Head settings for yolo/region layers.
    """

    position: int
    kind: BlockKind
    module: nn.Module | None = None
    sources: tuple[int, ...] = ()
    groups: int = 1
    group_id: int = 0
    activation: str = "linear"
    head: HeadSpec | None = None

    @property
    def is_head(self) -> bool:
        return self.kind.is_head

    @property
    def is_skip(self) -> bool:
        return self.kind in (BlockKind.ROUTE, BlockKind.SHORTCUT)


@dataclass
class CompiledGraph:
    """Immutable result of graph construction.

    Attributes:
        net: Global network settings.
        input_size: Exact inference input shape [B, C, H, W].
        chains: Executable chains; chain k writes buffer k.
        heads: Detection heads in topology order.
        channels: Output channels per layer position (index 0 is the input).
        layer_to_buffer: Buffer id holding each boundary layer's output.
        grid_size: Smallest spatial dimension over all head buffers, or None.
        version: Weight file format version.
    """

    net: NetworkSettings
    input_size: tuple[int, int, int, int]
    chains: nn.ModuleList
    heads: nn.ModuleList
    channels: list[int]
    layer_to_buffer: dict[int, int] = field(default_factory=dict)
    grid_size: int | None = None
    version: tuple[int, int, int] = (0, 0, 0)


class GraphBuilder:
    """Builds chains from topology blocks.

    Tracks channel counts as layers are added, then partitions the layer
    sequence at every skip source and head tap point.
    """

    def __init__(
        self,
        blocks: list[TopologyBlock],
        reader: WeightReader,
        batch_size: int | None = None,
    ):
        self.net = NetworkSettings.from_block(blocks[0])
        self.blocks = blocks[1:]
        self.reader = reader
        self.batch_size = batch_size if batch_size is not None else self.net.batch
        if self.batch_size < 1:
            raise ConfigError(f"batch size must be >= 1, got {self.batch_size}")

        self.channels: list[int] = [self.net.channels]
        self.steps: list[LayerStep] = []

    @property
    def input_size(self) -> tuple[int, int, int, int]:
        return (self.batch_size, self.net.channels, self.net.height, self.net.width)

    @property
    def position(self) -> int:
        """Position of the next layer to be added."""
        return len(self.steps) + 1

    def add_layer(self, block: TopologyBlock) -> None:
        """Add a layer from a topology block."""
        match block.kind:
            case BlockKind.CONVOLUTIONAL:
                step, out_ch = self._build_conv(block)
            case BlockKind.UPSAMPLE:
                step, out_ch = self._build_upsample(block)
            case BlockKind.REORG:
                step, out_ch = self._build_reorg(block)
            case BlockKind.MAXPOOL:
                step, out_ch = self._build_maxpool(block)
            case BlockKind.ROUTE:
                step, out_ch = self._build_route(block)
            case BlockKind.SHORTCUT:
                step, out_ch = self._build_shortcut(block)
            case BlockKind.YOLO | BlockKind.REGION:
                step, out_ch = self._build_head(block)
            case BlockKind.NET:
                raise ConfigError(f"[net] block at line {block.line} must be the first block")

        self.steps.append(step)
        self.channels.append(out_ch)

    def _build_conv(self, block: TopologyBlock) -> tuple[LayerStep, int]:
        """Build a convolution and load its weights.

        Returns:
            Layer step and filter count.
        """
        kernel = block.get_int("size")
        filters = block.get_int("filters")
        stride = block.get_int("stride", 1)
        pad = bool(block.get_int("pad", 0))
        padding = autopad(kernel, pad, block.get_int("padding", 0))
        batch_normalize = bool(block.get_int("batch_normalize", 0))
        activation = str(block.get("activation", "linear"))
        in_channels = self.channels[-1]

        conv = Conv(in_channels, filters, kernel, stride, padding, batch_normalize, activation)
        conv.load_params(self.reader.read_conv(kernel, in_channels, filters, batch_normalize))

        logger.debug(f"({self.position}) conv({kernel}, {in_channels}->{filters})")
        return LayerStep(self.position, block.kind, module=conv), filters

    def _build_upsample(self, block: TopologyBlock) -> tuple[LayerStep, int]:
        stride = block.get_int("stride", 2)
        logger.debug(f"({self.position}) upsample({stride})")
        return LayerStep(self.position, block.kind, module=Upsample(stride)), self.channels[-1]

    def _build_reorg(self, block: TopologyBlock) -> tuple[LayerStep, int]:
        stride = block.get_int("stride", 2)
        logger.debug(f"({self.position}) reorg({stride})")
        step = LayerStep(self.position, block.kind, module=Reorg(stride))
        return step, self.channels[-1] * stride * stride

    def _build_maxpool(self, block: TopologyBlock) -> tuple[LayerStep, int]:
        size = block.get_int("size")
        stride = block.get_int("stride", size)
        logger.debug(f"({self.position}) maxpool({size}, {stride})")
        return LayerStep(self.position, block.kind, module=MaxPool(size, stride)), self.channels[-1]

    def _build_route(self, block: TopologyBlock) -> tuple[LayerStep, int]:
        """Build a route: pass-through of one layer or concat of several.

        Returns:
            Layer step and the summed (or grouped) channel count.
        """
        refs = block.get_list("layers")
        if not all(isinstance(r, int) for r in refs):
            raise ConfigError(f"route at line {block.line}: layers must be integers, got {refs}")
        sources = tuple(resolve_index(self.position, r) for r in refs)

        groups = block.get_int("groups", 1)
        group_id = block.get_int("group_id", 0)
        if groups > 1:
            if len(sources) != 1:
                raise ConfigError(f"route at line {block.line}: groups need a single source")
            if not 0 <= group_id < groups:
                raise ConfigError(f"route at line {block.line}: group_id {group_id} out of range")
            out_ch = self.channels[sources[0]] // groups
        else:
            out_ch = sum(self.channels[s] for s in sources)

        logger.debug(f"({self.position}) route{sources}")
        step = LayerStep(
            self.position, block.kind, sources=sources, groups=groups, group_id=group_id
        )
        return step, out_ch

    def _build_shortcut(self, block: TopologyBlock) -> tuple[LayerStep, int]:
        source = resolve_index(self.position, block.get_int("from"))
        activation = str(block.get("activation", "linear"))
        get_activation(activation)

        if self.channels[source] != self.channels[-1]:
            raise GraphError(
                f"shortcut at layer {self.position} adds {self.channels[source]} channels "
                f"from layer {source} to {self.channels[-1]}"
            )

        logger.debug(f"({self.position}) shortcut({source}, {self.position - 1})")
        step = LayerStep(self.position, block.kind, sources=(source,), activation=activation)
        return step, self.channels[-1]

    def _build_head(self, block: TopologyBlock) -> tuple[LayerStep, int]:
        spec = HeadSpec.from_block(block)
        logger.debug(f"({self.position}) {block.kind.value} head, {spec.num_anchors} anchors")
        return LayerStep(self.position, block.kind, head=spec), self.channels[-1]

    def _source_layer(self, position: int) -> int:
        """Follow head tap points back to the layer whose output they pass through."""
        while position > 0 and self.steps[position - 1].is_head:
            position -= 1
        return position

    def _boundaries(self) -> list[int]:
        """Layer positions whose outputs must live in their own buffer."""
        needed = {0, len(self.steps)}
        for step in self.steps:
            if step.is_skip:
                needed.update(self._source_layer(s) for s in step.sources)
            elif step.is_head:
                needed.add(step.position - 1)
        return sorted(needed)

    def _assign_buffers(self) -> tuple[dict[int, int], list[tuple[int, int, int]]]:
        """Pass 1: give every boundary a buffer id.

        Returns:
            layer_to_buffer: Boundary position -> buffer id.
            ranges: (buffer id, first position, last position) per chain.
        """
        layer_to_buffer = {0: 0}
        ranges: list[tuple[int, int, int]] = []
        bounds = self._boundaries()

        for prev, cur in zip(bounds, bounds[1:]):
            first = prev + 1
            while first <= cur and self.steps[first - 1].is_head:
                first += 1
            if first > cur:
                layer_to_buffer[cur] = layer_to_buffer[prev]
                continue
            index = len(ranges) + 1
            ranges.append((index, first, cur))
            layer_to_buffer[cur] = index

        return layer_to_buffer, ranges

    def _build_chains(
        self, layer_to_buffer: dict[int, int], ranges: list[tuple[int, int, int]]
    ) -> nn.ModuleList:
        """Pass 2: emit chains with skip references bound to buffer ids."""
        chains = []
        for index, first, last in ranges:
            modules: list[nn.Module] = []
            for step in self.steps[first - 1 : last]:
                if step.kind is BlockKind.ROUTE:
                    buffers = [layer_to_buffer[self._source_layer(s)] for s in step.sources]
                    modules.append(Route(buffers, step.groups, step.group_id))
                elif step.kind is BlockKind.SHORTCUT:
                    buffer = layer_to_buffer[self._source_layer(step.sources[0])]
                    modules.append(Shortcut(buffer, step.activation))
                else:
                    assert step.module is not None
                    modules.append(step.module)
            chains.append(Chain(index, modules, (first, last)))
            logger.debug(f"chain {index}: layers {first}..{last}")
        return nn.ModuleList(chains)

    def _probe(
        self, chains: nn.ModuleList, ranges: list[tuple[int, int, int]]
    ) -> BufferStore:
        """Run a zero batch through every chain to validate shapes."""
        for chain in chains:
            chain.eval()
        probe = torch.zeros(self.input_size)
        try:
            with torch.no_grad():
                store = Executor(chains, self.input_size).run(probe)
        except DarknetError:
            raise
        except RuntimeError as e:
            raise GraphError(f"shape validation failed: {e}") from e

        for index, _, last in ranges:
            got = store[index].shape[1]
            if got != self.channels[last]:
                raise GraphError(
                    f"chain {index} produced {got} channels, layer {last} expects "
                    f"{self.channels[last]}"
                )
        return store

    def build(self) -> CompiledGraph:
        """Add every block, partition into chains and validate with a probe run.

        Returns:
            The compiled graph.
        """
        for block in self.blocks:
            self.add_layer(block)
        self.reader.finish()

        layer_to_buffer, ranges = self._assign_buffers()
        chains = self._build_chains(layer_to_buffer, ranges)
        store = self._probe(chains, ranges)

        heads: list[DetectionHead] = []
        for step in self.steps:
            if step.head is None:
                continue
            source = layer_to_buffer[self._source_layer(step.position - 1)]
            heads.append(
                DetectionHead(
                    index=len(heads) + 1,
                    source=source,
                    spec=step.head,
                    feature_shape=tuple(store[source].shape),
                    image_size=(self.net.width, self.net.height),
                )
            )

        if len({h.num_classes for h in heads}) > 1:
            raise GraphError(f"heads disagree on class count: {[h.num_classes for h in heads]}")

        grid_size = min((min(h.grid_w, h.grid_h) for h in heads), default=None)
        return CompiledGraph(
            net=self.net,
            input_size=self.input_size,
            chains=chains,
            heads=nn.ModuleList(heads),
            channels=list(self.channels),
            layer_to_buffer=layer_to_buffer,
            grid_size=grid_size,
        )


def build_graph(
    blocks: list[TopologyBlock],
    reader: WeightReader,
    batch_size: int | None = None,
) -> CompiledGraph:
    """Build a compiled graph from parsed blocks and a weight reader.

    This is the main entry point for constructing a model from a topology.
    Consumes the weight header, then one parameter set per convolution.

    Args:
        blocks: Output of ``parse_cfg``; the first block is ``[net]``.
        reader: Weight reader positioned at the start of the file.
        batch_size: Inference batch size; defaults to the ``[net]`` batch.

    Returns:
        CompiledGraph ready for execution.
    """
    header = reader.read_header()
    logger.debug(f"weights version {'.'.join(str(v) for v in header.version)}")
    graph = GraphBuilder(blocks, reader, batch_size).build()
    graph.version = header.version
    return graph
