import json

import pytest
from PIL import Image

from storyflow.errors import ImageNotFoundError, LoopIndexOutOfRangeError, StorageError
from storyflow.services.image_storage import ImageStorage


def write_image(path, color=(0, 0, 0)):
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", (4, 4), color).save(path)


def test_save_creates_directories_and_sidecar(tmp_path):
    storage = ImageStorage(tmp_path)
    path = storage.save_image(Image.new("RGB", (4, 4)), "shots/a.png", metadata={"prompt": "x"})

    assert path == (tmp_path / "shots" / "a.png").resolve()
    assert path.exists()
    assert json.loads((tmp_path / "shots" / "a.json").read_text(encoding="utf-8")) == {"prompt": "x"}


def test_save_without_metadata_writes_no_sidecar(tmp_path):
    storage = ImageStorage(tmp_path)
    storage.save_image(Image.new("RGB", (4, 4)), "a.png")
    assert not (tmp_path / "a.json").exists()


def test_load_missing_and_undecodable(tmp_path):
    storage = ImageStorage(tmp_path)
    with pytest.raises(ImageNotFoundError):
        storage.load_image("missing.png")

    (tmp_path / "broken.png").write_text("not an image", encoding="utf-8")
    with pytest.raises(StorageError):
        storage.load_image("broken.png")


@pytest.mark.parametrize("bad", ["", "../outside.png", "a/../../outside.png"])
def test_paths_must_stay_inside_working_directory(tmp_path, bad):
    storage = ImageStorage(tmp_path / "work")
    with pytest.raises(StorageError):
        storage.resolve(bad)


def test_absolute_paths_rejected(tmp_path):
    storage = ImageStorage(tmp_path)
    with pytest.raises(StorageError):
        storage.resolve(str(tmp_path / "a.png"))


def test_list_images_natural_order(tmp_path):
    for name in ["f_10.png", "f_2.jpg", "f_1.webp", "notes.txt"]:
        target = tmp_path / "frames" / name
        if name.endswith(".txt"):
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text("x", encoding="utf-8")
        else:
            write_image(target)
    storage = ImageStorage(tmp_path)

    assert [p.name for p in storage.list_images("frames")] == ["f_1.webp", "f_2.jpg", "f_10.png"]


def test_load_indexed(tmp_path):
    write_image(tmp_path / "frames" / "a.png", (10, 10, 10))
    write_image(tmp_path / "frames" / "b.png", (20, 20, 20))
    storage = ImageStorage(tmp_path)

    path, image = storage.load_indexed("frames", 1)
    assert path.name == "b.png"
    assert image.getpixel((0, 0)) == (20, 20, 20)

    with pytest.raises(LoopIndexOutOfRangeError) as excinfo:
        storage.load_indexed("frames", 2)
    assert excinfo.value.count == 2


def test_missing_folder(tmp_path):
    with pytest.raises(ImageNotFoundError):
        ImageStorage(tmp_path).list_images("nope")
