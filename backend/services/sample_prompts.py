"""
Starter prompt pool for the in-memory backend, so a local server can run a
match without a seeded Firestore `prompts` collection.
"""
from typing import List

from models.game import PromptPoolEntry

SAMPLE_PROMPTS = [
    ("funny", "The worst thing to say on a first date"),
    ("funny", "A terrible name for a pet goldfish"),
    ("funny", "What your houseplant secretly thinks of you"),
    ("funny", "The least reassuring thing a pilot could announce"),
    ("general", "A rejected slogan for a toothpaste brand"),
    ("general", "The real reason dinosaurs went extinct"),
    ("general", "A new Olympic sport nobody asked for"),
    ("general", "What the fortune cookie should have said"),
    ("pop_culture", "A sequel that should never be made"),
    ("pop_culture", "The title of your autobiography"),
    ("pop_culture", "A superhero with the most useless power"),
    ("food", "The worst pizza topping combination"),
    ("food", "A dish that would get you kicked off a cooking show"),
    ("work", "The most suspicious thing to put on a resume"),
    ("work", "What the office printer is really thinking"),
]


def sample_prompts() -> List[PromptPoolEntry]:
    return [
        PromptPoolEntry(id=f"sample-{i:02d}", text=text, category=category)
        for i, (category, text) in enumerate(SAMPLE_PROMPTS, start=1)
    ]
