import logging
import numpy as np
import pytest

from config import RenderConfig, ImageConfig, ExchangeConfig, OutputConfig
from partition import Region, plan_all
from parallel_render import (
    GroupReducer, TileEnvelope, TileExchanger, TransferHandle, ImageAssembler,
    ParallelRenderPipeline, ProtocolError, ParticipantTimeout
)
from render_pipeline import Tile, render_region
from scene_builder import Scene


# ------------------ Timing reduction ------------------

@pytest.mark.parametrize("size", range(1, 9))
def test_reduce_max_returns_group_maximum_on_root(size, thread_world):
    durations = [0.5 + ((7 * r) % 5) * 0.25 for r in range(size)]

    def rank_main(comm):
        return GroupReducer(comm).reduce_max(durations[comm.Get_rank()])

    results = thread_world(size).run(rank_main)
    assert results[0] == max(durations)
    assert all(r is None for r in results[1:])


def test_reduce_with_custom_combiner(thread_world):
    def rank_main(comm):
        return GroupReducer(comm).reduce(comm.Get_rank() + 1, lambda a, b: a * b)

    assert thread_world(4).run(rank_main)[0] == 24


# ------------------ Assembly ------------------

@pytest.mark.parametrize("count,policy", [(1, "last"), (3, "last"), (3, "spread"), (5, "spread")])
def test_assembled_image_matches_renderer_everywhere(count, policy, coordinate_renderer):
    width, height = 11, 3
    regions = plan_all(count, width, height, policy)
    tiles = [render_region(Scene(), r, 1, coordinate_renderer) for r in regions]

    image = ImageAssembler(width, height).assemble(tiles, regions)

    for y in range(height):
        for x in range(width):
            assert image[y, x].tolist() == coordinate_renderer(None, x, y, 1).tolist()


def test_assembler_rejects_overlap(coordinate_renderer):
    assembler = ImageAssembler(4, 2)
    assembler.place(render_region(Scene(), Region(0, 3, 0, 2), 1, coordinate_renderer))
    with pytest.raises(ProtocolError, match="overlaps"):
        assembler.place(render_region(Scene(), Region(2, 4, 0, 2), 1, coordinate_renderer))


def test_assembler_rejects_out_of_bounds():
    with pytest.raises(ProtocolError, match="outside"):
        ImageAssembler(4, 2).place(Tile.empty(Region(3, 5, 0, 2)))


def test_assembler_rejects_tile_for_wrong_region():
    regions = plan_all(2, 4, 2)
    tiles = [Tile.empty(regions[1]), Tile.empty(regions[0])]
    with pytest.raises(ProtocolError):
        ImageAssembler(4, 2).assemble(tiles, regions)


def test_assembler_reports_incomplete_image():
    assembler = ImageAssembler(4, 2)
    assembler.place(Tile.empty(Region(0, 2, 0, 2)))
    assert not assembler.is_complete
    assembler.place(Tile.empty(Region(2, 4, 0, 2)))
    assert assembler.is_complete


# ------------------ Envelope and exchange ------------------

def test_envelope_validation_rejects_size_mismatch():
    region = Region(0, 2, 0, 2)
    envelope = TileEnvelope(1, region, region.num_samples, np.zeros(region.num_samples - 3))
    with pytest.raises(ProtocolError, match="sent"):
        envelope.validate(1, region)


def test_envelope_validation_rejects_foreign_region():
    tile = Tile.empty(Region(0, 3, 0, 2))
    envelope = TileEnvelope.from_tile(tile, 1)
    with pytest.raises(ProtocolError, match="expected"):
        envelope.validate(1, Region(0, 2, 0, 2))


def test_envelope_validation_rejects_wrong_sender():
    region = Region(0, 2, 0, 2)
    envelope = TileEnvelope.from_tile(Tile.empty(region), 0)
    with pytest.raises(ProtocolError, match="claims"):
        envelope.validate(1, region)


def test_receive_rejects_desynchronized_partition(thread_world):
    world = thread_world(2)
    root, worker = world.comm(0), world.comm(1)
    TileExchanger(worker).send_tile(Tile.empty(Region(2, 4, 0, 2)), 1)

    with pytest.raises(ProtocolError):
        TileExchanger(root).receive_tile(1, Region(3, 4, 0, 2))


def test_receive_rejects_non_envelope_message(thread_world):
    world = thread_world(2)
    world.comm(1).isend(np.zeros(12), dest=0, tag=0)
    with pytest.raises(ProtocolError, match="Unexpected message"):
        TileExchanger(world.comm(0)).receive_tile(1, Region(2, 4, 0, 2))


def test_missing_participant_is_detected_by_timeout(thread_world):
    world = thread_world(2)
    root = world.comm(0)
    regions = plan_all(2, 4, 2)
    exchanger = TileExchanger(root, timeout=0.2, poll_interval=0.01)

    with exchanger.send_tile(Tile.empty(regions[0]), 0):
        exchanger.receive_tile(0, regions[0])
        # participant 1 never sends
        with pytest.raises(ParticipantTimeout) as excinfo:
            exchanger.receive_tile(1, regions[1])

    assert excinfo.value.participant_index == 1
    assert "Participant 1" in str(excinfo.value)


def test_transfer_handle_waits_on_exit(pending_request):
    request = pending_request()
    request.complete()
    with TransferHandle(request, 0, 1) as handle:
        pass
    assert handle.done


def test_transfer_handle_reports_pending_send(pending_request):
    request = pending_request()
    handle = TransferHandle(request, 0, 1)
    assert not handle.done
    request.complete()
    assert handle.done


def test_transfer_handle_skips_wait_when_aborting(pending_request):
    handle = TransferHandle(pending_request(), 0, 1)
    with pytest.raises(RuntimeError):
        with handle:
            raise RuntimeError("root gave up")
    assert not handle.done


# ------------------ End to end ------------------

def _config(tmp_path, width, height, **exchange):
    return RenderConfig(
        image=ImageConfig(width=width, height=height, samples=1),
        exchange=ExchangeConfig(**exchange),
        output=OutputConfig(output_dir=str(tmp_path), image_format='png')
    )


def test_two_participants_four_by_two(tmp_path, thread_world, coordinate_renderer):
    config = _config(tmp_path, 4, 2, timeout=10.0)

    def rank_main(comm):
        pipeline = ParallelRenderPipeline(config, comm, pixel_renderer=coordinate_renderer)
        image = pipeline.run_parallel()
        return pipeline.region, pipeline.max_time, image

    (region0, max0, image), (region1, max1, other) = thread_world(2).run(rank_main)

    assert (region0.x0, region0.x1) == (0, 2)
    assert (region1.x0, region1.x1) == (2, 4)
    assert other is None and max1 is None
    assert max0 >= 0.0
    # participant 1's local (1, 1) lands at global (3, 1)
    assert image[1, 3].tolist() == [3.0, 1.0, 0.0]
    assert (tmp_path / 'raytracing_2.png').exists()


@pytest.mark.parametrize("size,width", [(3, 10), (4, 9)])
def test_uneven_width_renders_every_column(tmp_path, thread_world, coordinate_renderer, size, width):
    config = _config(tmp_path, width, 3, timeout=10.0)

    def rank_main(comm):
        return ParallelRenderPipeline(config, comm, pixel_renderer=coordinate_renderer) \
            .run_parallel(write_output=False)

    image = thread_world(size).run(rank_main)[0]
    expected = np.stack(list(np.meshgrid(np.arange(width), np.arange(3))) + [np.zeros((3, width))], axis=-1)
    np.testing.assert_array_equal(image, expected)


def test_single_participant_image_equals_local_tile(tmp_path, thread_world, coordinate_renderer):
    config = _config(tmp_path, 5, 3)

    def rank_main(comm):
        pipeline = ParallelRenderPipeline(config, comm, pixel_renderer=coordinate_renderer)
        image = pipeline.run_parallel(write_output=False)
        tile, _ = pipeline.render_tile(pipeline.region)
        return pipeline.region, image, tile

    region, image, tile = thread_world(1).run(rank_main)[0]
    assert region == Region(0, 5, 0, 3)
    np.testing.assert_array_equal(image, tile.pixels)


def test_every_rank_logs_its_time(tmp_path, thread_world, coordinate_renderer, caplog):
    config = _config(tmp_path, 6, 2)

    def rank_main(comm):
        return ParallelRenderPipeline(config, comm, pixel_renderer=coordinate_renderer) \
            .run_parallel(write_output=False)

    with caplog.at_level(logging.INFO, logger='parallel_render'):
        thread_world(3).run(rank_main)

    messages = [r.getMessage() for r in caplog.records]
    for rank in range(3):
        assert any(m.startswith(f"[Rank {rank}] Time:") for m in messages)
    assert sum(m.startswith("Max Time:") for m in messages) == 1


def test_strict_policy_fails_before_rendering(tmp_path, thread_world):
    config = _config(tmp_path, 5, 2)
    config.partition.remainder_policy = "strict"
    calls = []

    def renderer(scene, x, y, samples):
        calls.append((x, y))
        return np.zeros(3)

    def rank_main(comm):
        return ParallelRenderPipeline(config, comm, pixel_renderer=renderer).run_parallel()

    with pytest.raises(ValueError, match="not divisible"):
        thread_world(2).run(rank_main)
    assert calls == []
    assert not (tmp_path / 'raytracing_2.png').exists()


def test_root_outside_group_is_rejected(tmp_path, thread_world):
    config = _config(tmp_path, 4, 2, root=3)
    with pytest.raises(ValueError, match="Root rank 3"):
        ParallelRenderPipeline(config, thread_world(2).comm(0))
