import json

import numpy as np
import soundfile as sf

import sync_audio

SR = 8000


def _write(path, x, sr=SR):
    sf.write(path, x, sr, subtype='FLOAT')
    return str(path)


def _pair(tmp_path, noise, shift=0.25):
    base = noise(SR)
    a = _write(tmp_path / 'cam.wav', base)
    b = _write(tmp_path / 'rec.wav', np.concatenate([np.zeros(int(shift * SR), dtype=np.float32), base]))
    return base, a, b


def test_prints_offset(tmp_path, noise, capsys):
    _, a, b = _pair(tmp_path, noise)
    assert sync_audio.main([a, b]) == sync_audio.EXIT_OK
    out = capsys.readouterr().out
    assert out.startswith('rec.wav: offset +0.2500 s relative to cam.wav')


def test_json_output(tmp_path, noise, capsys):
    _, a, b = _pair(tmp_path, noise)
    assert sync_audio.main([a, b, '--json', '--parallel']) == sync_audio.EXIT_OK
    payload = json.loads(capsys.readouterr().out)
    assert abs(payload['syncOffset'] - 0.25) <= 50 / SR
    assert payload['reference'] == b
    assert payload['stride'] == 50
    assert payload['sampleRate'] == SR


def test_decode_failure_status(tmp_path, noise, capsys):
    _, a, _ = _pair(tmp_path, noise)
    assert sync_audio.main([a, str(tmp_path / 'missing.wav')]) == sync_audio.EXIT_DECODE_ERROR
    assert 'decode error' in capsys.readouterr().err


def test_silent_input_status(tmp_path, noise, capsys):
    _, a, _ = _pair(tmp_path, noise)
    silent = _write(tmp_path / 'silent.wav', np.zeros(SR, dtype=np.float32))
    assert sync_audio.main([a, silent]) == sync_audio.EXIT_SYNC_ERROR
    assert 'sync error' in capsys.readouterr().err


def test_sample_rate_mismatch_status(tmp_path, noise):
    _, a, _ = _pair(tmp_path, noise)
    other = _write(tmp_path / 'other.wav', noise(SR, seed=3), sr=16000)
    assert sync_audio.main([a, other]) == sync_audio.EXIT_SYNC_ERROR


def test_bad_stride_is_usage_error(tmp_path, noise):
    _, a, b = _pair(tmp_path, noise)
    try:
        sync_audio.main([a, b, '--stride', '0'])
    except SystemExit as e:
        assert e.code == 2
    else:
        raise AssertionError('expected a usage error')


def test_write_aligned_outputs(tmp_path, noise, capsys):
    base, a, b = _pair(tmp_path, noise, shift=0.25)
    out_dir = tmp_path / 'aligned'
    assert sync_audio.main([a, b, '--write', '--out', str(out_dir)]) == sync_audio.EXIT_OK
    assert 'Wrote 2 files' in capsys.readouterr().out

    cam, sr_cam = sf.read(out_dir / 'cam_aligned.wav', dtype='float32')
    rec, sr_rec = sf.read(out_dir / 'rec_aligned.wav', dtype='float32')
    assert sr_cam == sr_rec == SR
    assert len(cam) == len(rec) == len(base)
    np.testing.assert_allclose(cam, rec, atol=1e-4)


def test_stride_too_large_for_rate_status(tmp_path, noise, capsys):
    _, a, b = _pair(tmp_path, noise)
    assert sync_audio.main([a, b, '--stride', '20000']) == sync_audio.EXIT_SYNC_ERROR
    err = capsys.readouterr().err
    assert 'sync error' in err
    assert 'stride 20000' in err
