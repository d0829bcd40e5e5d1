# Host side of the CHIP-8 interpreter: command line, ROM loading, the
# pygame window and the thread that keeps stepping the machine.


import argparse
import logging
import sys
import threading

import os
os.environ["PYGAME_HIDE_SUPPORT_PROMPT"] = "no welcome message"   # this env var disable pygame's welcome message when imported
import pygame

from chip8 import SCREEN_HEIGHT, SCREEN_WIDTH, Machine, render_text


log = logging.getLogger(__name__)


# ******************** STATIC SECTION
DEBUG = True if int(os.getenv('DEBUG', 0)) >= 1 else False
SCALE = 15
CYCLE_HZ = 500      # instructions per second, 0 runs unthrottled
FPS = 60
BLUE = pygame.Color(80,69,155,255)
LIGHT_BLUE = pygame.Color(136,126,203,255)
LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


# ******************** UTILITIES SECTION
def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="CHIP-8 interpreter")
    parser.add_argument("-f", "--file", required=True, help="input rom file")
    parser.add_argument("-s", "--scale", type=int, default=SCALE, help="size in pixels of a CHIP-8 pixel")
    parser.add_argument("--hz", type=int, default=CYCLE_HZ, help="instructions per second, 0 for no limit")
    parser.add_argument("-v", "--verbose", action="store_true", help="trace every executed instruction")
    parser.add_argument("--text", action="store_true", help="print frames to the terminal instead of opening a window")
    return parser.parse_args(argv)


# ******************** I/O SECTION
class Screen:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT, s=SCALE, bg_color=BLUE, fg_color=LIGHT_BLUE, surface=None):
        self.w, self.h, self.scale = w, h, s
        self.background = bg_color
        self.foreground = fg_color
        if surface is None:
            surface = pygame.display.set_mode((w * self.scale, h * self.scale))
        self.surface = surface
        self.surface.fill(self.background)

    def blit(self, rows):
        """copy a frame snapshot onto the surface, it shows up on the next refresh"""
        for y, row in enumerate(rows):
            for x, pixel in enumerate(row):
                pygame.draw.rect(
                    self.surface,
                    self.foreground if pixel else self.background,
                    (x * self.scale, y * self.scale, self.scale, self.scale)
                )

    @staticmethod
    def refresh():
        pygame.display.flip()

class TextScreen:
    """draws frames on a text stream, for terminals and machines without a display"""

    def __init__(self, out=None):
        self.out = out or sys.stdout

    def blit(self, rows):
        self.out.write("\x1b[2J\x1b[H" + render_text(rows))

    def refresh(self):
        self.out.flush()


# ******************** DRIVER SECTION
class Stepper(threading.Thread):
    """keeps calling machine.step() until stopped or until the program faults"""

    def __init__(self, machine, hz=CYCLE_HZ):
        super().__init__(name="chip8-stepper", daemon=True)
        self.machine = machine
        self.hz = hz
        self.error = None
        self.halted = threading.Event()

    def run(self):
        delay = 1 / self.hz if self.hz else 0
        while not self.halted.is_set():
            try:
                self.machine.step()
            except Exception as e:
                log.error("%s\n%s", e, self.machine)
                self.error = e
                self.halted.set()
                return
            if delay:
                self.halted.wait(delay)

    def stop(self):
        self.halted.set()

def poll(machine, screen):
    """present the latest frame if the machine drew something, return True when it did"""
    rows = machine.take_frame()
    if rows is None:
        return False
    screen.blit(rows)
    screen.refresh()
    return True

def run(machine, screen, hz=CYCLE_HZ, fps=FPS):
    """
    step the machine on its own thread and redraw from this one
    return the exception that stopped the program (unknown opcode, out of range access, ...), if any
    """
    clock = pygame.time.Clock()
    stepper = Stepper(machine, hz)
    stepper.start()
    running = True
    try:
        while running and stepper.is_alive():
            clock.tick(fps)
            if pygame.display.get_init():
                for event in pygame.event.get():
                    if event.type == pygame.QUIT:
                        running = False
                    elif event.type == pygame.KEYDOWN and event.key == pygame.K_ESCAPE:
                        running = False
            poll(machine, screen)
    finally:
        stepper.stop()
        stepper.join()
    poll(machine, screen)   # last frame drawn before a fault
    return stepper.error


# ******************** ENTRY POINT SECTION
def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose or DEBUG else logging.INFO,
        format=LOG_FORMAT,
    )
    try:
        machine = Machine.from_file(args.file)
    except (OSError, ValueError) as e:
        sys.exit(f"Cannot load ROM {args.file}: {e}")

    pygame.init()
    try:
        if args.text:
            screen = TextScreen()
        else:
            pygame.display.set_caption(os.path.basename(args.file))
            screen = Screen(s=args.scale)
        error = run(machine, screen, hz=args.hz)
    except KeyboardInterrupt:
        error = None
    finally:
        pygame.quit()
    if error is not None:
        sys.exit(f"********** THE EMULATOR CRASHED WITH THE FOLLOWING STATE\n{error}\n{machine}")


if __name__ == "__main__":
    main()
