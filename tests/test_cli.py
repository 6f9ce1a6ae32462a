import pytest

from sitemirror import cli
from sitemirror.settings import Settings, flatten_config, load_config_file


def test_defaults():
    args = cli.parse_args(["https://ex.com/"])
    s = cli.settings_from_args(args)
    assert args.output == "mirror"
    assert s == Settings()


def test_flags():
    args = cli.parse_args(
        [
            "https://ex.com/",
            "-o", "out",
            "-d", "0",
            "-c", "3",
            "-r",
            "--user-agent", "Bot/9",
            "--timeout", "5",
            "--only-resources", "images,CSS",
            "--convert-to-webp",
            "--webp-quality", "150",
            "--clear-ledger",
        ]
    )
    s = cli.settings_from_args(args)
    assert args.output == "out"
    assert s.max_depth == 0
    assert s.max_concurrency == 3
    assert s.ignore_robots
    assert s.user_agent == "Bot/9"
    assert s.timeout == 5.0
    assert s.only_resources == frozenset({"images", "css"})
    assert s.convert_to_webp
    assert s.webp_quality == 100
    assert s.clear_ledger


def test_full_mirror():
    s = cli.settings_from_args(cli.parse_args(["https://ex.com/", "--full-mirror", "-d", "2"]))
    assert (s.max_depth, s.max_concurrency, s.ignore_robots) == (0, 100, True)


@pytest.mark.parametrize(
    "argv",
    [
        ["https://ex.com/", "--only-resources", "images,fonts"],
        ["https://ex.com/", "-c", "0"],
        [],
    ],
)
def test_bad_arguments(argv):
    with pytest.raises(SystemExit):
        cli.parse_args(argv)


def test_toml_config_supplies_defaults(tmp_path):
    cfg = tmp_path / "mirror.toml"
    cfg.write_text(
        '[crawl]\nmax_depth = 5\nignore_robots = true\n'
        '[fetch]\nonly_resources = ["images", "css"]\n'
        '[output]\nconvert-to-webp = true\n',
        encoding="utf-8",
    )
    s = cli.settings_from_args(cli.parse_args(["https://ex.com/", "--config", str(cfg)]))
    assert s.max_depth == 5
    assert s.ignore_robots
    assert s.only_resources == frozenset({"images", "css"})
    assert s.convert_to_webp

    s = cli.settings_from_args(
        cli.parse_args(["https://ex.com/", "--config", str(cfg), "-d", "1"])
    )
    assert s.max_depth == 1


def test_yaml_config(tmp_path):
    cfg = tmp_path / "mirror.yaml"
    cfg.write_text("crawl:\n  max_depth: 7\ngeneral:\n  verbose: true\n", encoding="utf-8")
    args = cli.parse_args(["https://ex.com/", "--config", str(cfg)])
    assert args.max_depth == 7
    assert args.verbose


def test_load_config_file_rejects_unknown_formats(tmp_path):
    cfg = tmp_path / "mirror.ini"
    cfg.write_text("[crawl]\n", encoding="utf-8")
    with pytest.raises(RuntimeError):
        load_config_file(str(cfg))


def test_flatten_config():
    flat = flatten_config({"crawl": {"max-depth": 2}, "user-agent": "X", "other": {"a": 1}})
    assert flat == {"max_depth": 2, "user_agent": "X"}


def test_depth_allowed():
    assert Settings(max_depth=0).depth_allowed(50)
    assert Settings(max_depth=2).depth_allowed(2)
    assert not Settings(max_depth=2).depth_allowed(3)


def test_main_invalid_url(tmp_path, capsys):
    assert cli.main(["mailto:me@ex.com", "-o", str(tmp_path)]) == 1
    assert "Invalid URL" in capsys.readouterr().out


def test_main_runs_a_mirror(tmp_path, capsys, monkeypatch, fetcher):
    fetcher.add("https://ex.com/", "<html><body>hello</body></html>")
    monkeypatch.setattr("sitemirror.crawler.HttpFetcher", lambda user_agent, timeout: fetcher)
    assert cli.main(["https://ex.com/", "-o", str(tmp_path), "-r"]) == 0
    out = capsys.readouterr().out
    assert "Mirroring complete" in out
    assert "Pages processed: 1" in out
    assert (tmp_path / "index.html").is_file()


def test_main_seed_failure(tmp_path, monkeypatch, fetcher):
    monkeypatch.setattr("sitemirror.crawler.HttpFetcher", lambda user_agent, timeout: fetcher)
    assert cli.main(["https://ex.com/", "-o", str(tmp_path), "-r"]) == 1
