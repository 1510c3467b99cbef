import argparse
import logging

from syncrecorder import DisplaySink, MockBackend, PipelineController, RecordingSink, create_sources, runtime

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Three synthetic cameras, displayed and recorded")
    parser.add_argument("--count", type=int, default=3, help="Number of sources")
    parser.add_argument("--output", type=str, default="./recordings", help="Output directory")
    parser.add_argument("--cycles", type=int, default=200, help="Cycles to run")
    parser.add_argument("--no-display", action="store_true", help="Record only")
    args = parser.parse_args()

    backend = MockBackend(count=args.count, width=640, height=480, fps=20)
    with runtime(backend):
        sources = create_sources(backend, count=args.count, pool_capacity=4)
        sinks = [RecordingSink(args.output, frame_rate=20, quality=90)]
        display = None
        if not args.no_display:
            display = DisplaySink(scale=0.5)
            sinks.insert(0, display)
        with PipelineController(sources, sinks, timeout=5.0, max_cycles=args.cycles) as pipeline:
            if display is not None:
                display.on_quit = pipeline.stop
            stats = pipeline.run()
    logger.info(stats.summary())


if __name__ == "__main__":
    main()
