# pygame front-end for the interpreter in chip8.py
#
# everything the engine leaves to its caller lives here: reading the ROM from
# disk, painting the framebuffer, the buzzer, mapping the keyboard onto the
# hex keypad and deciding how many instructions run per timer tick


import argparse
import random
import sys
from array import array

import os
os.environ["PYGAME_HIDE_SUPPORT_PROMPT"] = "no welcome message"   # this env var disable pygame's welcome message when imported
import pygame
from pygame.locals import (
    K_0, K_1, K_2, K_3,
    K_4, K_5, K_6, K_7,
    K_8, K_9, K_a, K_b,
    K_c, K_d, K_e, K_f,
)

from chip8 import Chip8, Chip8Error, SCREEN_WIDTH, SCREEN_HEIGHT


# ******************** STATIC SECTION
KEY_MAPPINGS = {
    K_0: 0x0,
    K_1: 0x1,
    K_2: 0x2,
    K_3: 0x3,
    K_4: 0x4,
    K_5: 0x5,
    K_6: 0x6,
    K_7: 0x7,
    K_8: 0x8,
    K_9: 0x9,
    K_a: 0xA,
    K_b: 0xB,
    K_c: 0xC,
    K_d: 0xD,
    K_e: 0xE,
    K_f: 0xF,
}

CPU_FREQ = 1000         # instructions per second
TIMER_FREQ = 60         # delay/sound timers tick rate, also the main loop rate
DISPLAY_FREQ = 30
TONE_FREQ = 440
TONE_VOLUME = 0.1
SCALE = 15
BACKGROUND = "000000"
FOREGROUND = "ffffff"


# ******************** UTILITIES SECTION
def parse_color(value):
    """RRGGBB hex string, optionally prefixed by #, to a pygame color"""
    value = value.lstrip("#")
    if len(value) != 6:
        raise argparse.ArgumentTypeError(f"invalid color {value!r}, expected RRGGBB")
    try:
        rgb = int(value, 16)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid color {value!r}, expected RRGGBB")
    return pygame.Color(rgb >> 16, (rgb >> 8) & 0xFF, rgb & 0xFF, 255)


def get_args(argv=None):
    parser = argparse.ArgumentParser(description="CHIP-8 interpreter")
    parser.add_argument("-f", "--file", required=True, help="input rom file")
    parser.add_argument("--cpu-freq", type=int, default=CPU_FREQ, help="instructions executed per second")
    parser.add_argument("--bg", type=parse_color, default=parse_color(BACKGROUND), help="background color, hex RRGGBB")
    parser.add_argument("--fg", type=parse_color, default=parse_color(FOREGROUND), help="foreground color, hex RRGGBB")
    parser.add_argument("--scale", type=int, default=SCALE, help="size in screen pixels of a CHIP-8 pixel")
    parser.add_argument("--seed", type=int, default=None, help="seed of the random number generator")
    return parser.parse_args(argv)


class Pacer:
    """
    turns elapsed time into a whole number of instructions to run

    a fraction of an instruction can't be executed, so the fractional parts are
    summed up and an extra instruction is run every time they add up to one,
    kind of like leap years
    """
    def __init__(self, frequency=CPU_FREQ):
        self.frequency = frequency
        self.remainder = 0.0

    def budget(self, seconds):
        n_inst = self.frequency * seconds
        whole = int(n_inst)
        self.remainder += n_inst - whole
        if self.remainder >= 1:
            whole += 1
            self.remainder -= 1
        return whole


# ******************** I/O SECTION
class Screen:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT, s=SCALE, bg_color=None, fg_color=None):
        self.w, self.h, self.scale = w, h, s
        self.background = bg_color if bg_color is not None else parse_color(BACKGROUND)
        self.foreground = fg_color if fg_color is not None else parse_color(FOREGROUND)
        self.surface = pygame.display.set_mode(
            (w * self.scale, h * self.scale),
        )
        self.surface.fill(self.background)

    def render(self, framebuffer):
        """paint a framebuffer snapshot (rows of booleans) and flip it on screen"""
        self.surface.fill(self.background)
        for y, row in enumerate(framebuffer):
            for x, pixel in enumerate(row):
                if pixel:
                    pygame.draw.rect(
                        self.surface,
                        self.foreground,
                        (x * self.scale, y * self.scale, self.scale, self.scale)
                    )
        pygame.display.flip()


def build_tone_samples(sample_rate, size, channels, frequency=TONE_FREQ):
    """one period of a square wave as signed 16-bit samples, interleaved per channel"""
    period = int(round(sample_rate / frequency))
    amplitude = 2 ** (abs(size) - 1) - 1
    samples = array("h")
    for t in range(period):
        value = amplitude if t < period / 2 else -amplitude
        samples.extend([value] * channels)
    return samples


class Buzzer:
    """plays a tone while the sound timer is running"""
    def __init__(self, frequency=TONE_FREQ, volume=TONE_VOLUME):
        self.tone = None
        self.playing = False
        try:
            if pygame.mixer.get_init() is None:
                pygame.mixer.init(frequency=44100, size=-16, channels=1)
            sample_rate, size, channels = pygame.mixer.get_init()
            samples = build_tone_samples(sample_rate, size, channels, frequency)
            self.tone = pygame.mixer.Sound(buffer=samples.tobytes())
            self.tone.set_volume(volume)
        except pygame.error as e:
            print(f"Failed to initialize audio: {e}", file=sys.stderr)

    def update(self, active):
        if self.tone is None or active == self.playing:
            return
        if active:
            self.tone.play(loops=-1)
        else:
            self.tone.stop()
        self.playing = active


def handle_events(chip):
    """forward keyboard events to the keypad, return False once the user wants to quit"""
    for event in pygame.event.get():
        if event.type == pygame.QUIT:
            return False
        if event.type == pygame.KEYDOWN:
            if event.key == pygame.K_ESCAPE:
                return False
            if event.key in KEY_MAPPINGS:
                chip.set_key(KEY_MAPPINGS[event.key])
        elif event.type == pygame.KEYUP:
            if event.key in KEY_MAPPINGS:
                chip.clear_key(KEY_MAPPINGS[event.key])
    return True


def tick(chip, buzzer, pacer, elapsed):
    """
    one timer period: input, timers, buzzer, then the instruction budget
    returns the number of instructions run, None if the user quit (nothing else happens then)
    """
    if not handle_events(chip):
        return None
    chip.decrement_timers()
    buzzer.update(chip.sound_on)
    n_inst = pacer.budget(elapsed)
    for _ in range(n_inst):
        chip.step()
    return n_inst


# ******************** ENTRY POINT SECTION
def main(argv=None):
    args = get_args(argv)
    rng = random.Random(args.seed) if args.seed is not None else None
    chip = Chip8(rng=rng)
    try:
        chip.load_rom(args.file)
    except Chip8Error as e:
        sys.exit(f"********** CANNOT LOAD THE ROM ({e}) WITH THE FOLLOWING STATE\n{chip}")

    # pygame initialization
    pygame.init()
    pygame.display.set_caption(os.path.basename(args.file))
    clock = pygame.time.Clock()
    # IO
    screen = Screen(s=args.scale, bg_color=args.bg, fg_color=args.fg)
    buzzer = Buzzer()
    pacer = Pacer(args.cpu_freq)
    frames_per_render = max(1, TIMER_FREQ // DISPLAY_FREQ)

    cpu_count = timer_count = display_count = 0
    start = pygame.time.get_ticks()
    # emulation loop
    try:
        while True:
            elapsed = clock.tick(TIMER_FREQ) / 1000
            n_inst = tick(chip, buzzer, pacer, elapsed)
            if n_inst is None:
                break
            timer_count += 1
            cpu_count += n_inst
            if timer_count % frames_per_render == 0:
                screen.render(chip.framebuffer)
                display_count += 1
    except Chip8Error as e:
        sys.exit(f"********** THE EMULATOR CRASHED ({e}) WITH THE FOLLOWING STATE\n{chip}")
    finally:
        seconds = max(pygame.time.get_ticks() - start, 1) / 1000
        buzzer.update(False)
        pygame.quit()

    print(f"cpu = {cpu_count / seconds:.0f}/s")
    print(f"timer = {timer_count / seconds:.0f}/s")
    print(f"display = {display_count / seconds:.0f}/s")


if __name__ == "__main__":
    main()
